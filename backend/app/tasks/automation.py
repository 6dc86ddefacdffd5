"""Automation tick task for deployments that drive rules from Celery beat."""

import asyncio
import logging
from typing import Optional

from celery.signals import worker_process_shutdown
from redis import asyncio as aioredis
from redis.exceptions import LockError

from app.celery_app import celery_app
from app.config import get_settings
from app.services.automation_scheduler import AutomationScheduler, session_factories
from app.services.realtime import RedisBroadcaster

logger = logging.getLogger(__name__)

TICK_LOCK_NAME = "voltwise:automation:tick"

_task_loop: asyncio.AbstractEventLoop | None = None
_scheduler: Optional[AutomationScheduler] = None
_broadcaster: Optional[RedisBroadcaster] = None


def _get_task_loop() -> asyncio.AbstractEventLoop:
    """Get or create the persistent worker event loop."""
    global _task_loop

    if _task_loop is None or _task_loop.is_closed():
        _task_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_task_loop)

    return _task_loop


def _run_async(coro):
    """Run an async coroutine from a sync Celery task."""
    loop = _get_task_loop()
    return loop.run_until_complete(coro)


def _get_scheduler() -> AutomationScheduler:
    """One scheduler per worker process so catch-up state survives between ticks."""
    global _scheduler, _broadcaster

    if _scheduler is None:
        settings = get_settings()
        _broadcaster = RedisBroadcaster()
        engine_factory, home_directory_factory = session_factories(
            broadcaster=_broadcaster,
            device_write_timeout=settings.automation_device_write_timeout_seconds,
        )
        _scheduler = AutomationScheduler(
            engine_factory,
            home_directory_factory,
            tick_seconds=settings.automation_tick_seconds,
            max_catchup_minutes=settings.automation_max_catchup_minutes,
        )
    return _scheduler


async def _close_task_resources() -> None:
    """Close async resources bound to the worker task loop."""
    if _broadcaster is not None:
        await _broadcaster.close()


def _shutdown_task_loop(**_kwargs) -> None:
    """Cleanup persistent task loop when a Celery worker process exits."""
    global _task_loop

    if _task_loop is None or _task_loop.is_closed():
        _task_loop = None
        return

    try:
        _task_loop.run_until_complete(_close_task_resources())
    except Exception as exc:
        logger.warning("Failed to close async task resources during shutdown: %s", exc)
    finally:
        _task_loop.close()
        _task_loop = None


@worker_process_shutdown.connect
def _on_worker_process_shutdown(**kwargs):
    """Handle Celery worker process shutdown."""
    _shutdown_task_loop(**kwargs)


async def _tick_with_lock() -> dict:
    """Run one tick while holding a cluster-wide lock; concurrent ticks are skipped."""
    settings = get_settings()

    client = aioredis.from_url(settings.redis_url)
    lock = client.lock(TICK_LOCK_NAME, timeout=120, blocking_timeout=1)
    try:
        if not await lock.acquire():
            logger.info("Automation tick already running on another worker, skipping")
            return {"status": "skipped", "reason": "locked"}

        try:
            outcomes = await _get_scheduler().tick()
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Automation tick lock expired before release")
    finally:
        await client.aclose()

    executed = sum(1 for results in outcomes.values() for r in results if r.success)
    return {"status": "completed", "homes": len(outcomes), "executed": executed}


@celery_app.task(name="app.tasks.automation.run_automation_tick")
def run_automation_tick():
    """Evaluate automation rules for every home."""
    if get_settings().automation_scheduler != "celery":
        return {"status": "skipped", "reason": "scheduler not set to celery"}

    logger.debug("Running automation tick")
    result = _run_async(_tick_with_lock())
    if result.get("executed"):
        logger.info(f"Automation tick executed {result['executed']} rule(s)")
    return result
