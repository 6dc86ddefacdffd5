"""Periodic driver for rule evaluation.

One ``AutomationScheduler`` owns the loop: ``start()`` launches it,
``stop()`` lets the running tick finish and prevents the next one.
``tick()`` can be called directly, which is how tests and the Celery beat
task drive it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional, Sequence

from app.database import AsyncSessionLocal
from app.services import app_settings as cfg
from app.services.automation_engine import AutomationEngine, ExecutionResult, build_engine
from app.services.automation_policy import AutomationPolicy
from app.services.automation_stores import HomeDirectory, SqlHomeDirectory
from app.services.automation_triggers import minutes_between
from app.services.realtime import Broadcaster

logger = logging.getLogger(__name__)

# Each factory call yields a collaborator bound to its own session
EngineFactory = Callable[[], AsyncContextManager[AutomationEngine]]
HomeDirectoryFactory = Callable[[], AsyncContextManager[HomeDirectory]]


class AutomationScheduler:
    """Serialized ticks; homes evaluated in parallel, rules within a home in order."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        home_directory_factory: HomeDirectoryFactory,
        tick_seconds: float = 30.0,
        max_catchup_minutes: int = 5,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine_factory = engine_factory
        self.home_directory_factory = home_directory_factory
        self.tick_seconds = tick_seconds
        self.max_catchup_minutes = max_catchup_minutes
        self.clock = clock

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._last_tick_at: Optional[datetime] = None
        self.ticks_completed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_tick_at(self) -> Optional[datetime]:
        return self._last_tick_at

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="automation_scheduler")
        logger.info(f"Automation scheduler started (tick: {self.tick_seconds}s)")

    async def stop(self) -> None:
        """Stop scheduling ticks. A tick already running completes first."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Automation scheduler stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Automation tick failed: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

    async def tick(self, now: Optional[datetime] = None) -> Dict[int, List[ExecutionResult]]:
        """Evaluate every home once. Minutes skipped since the last tick are caught up."""
        async with self._lock:
            now = now or self.clock()
            minutes = minutes_between(self._last_tick_at, now, self.max_catchup_minutes)
            if not minutes:
                return {}

            # Minutes stay pending (and are caught up next tick) if homes can't be listed
            async with self.home_directory_factory() as homes:
                home_ids = await homes.list_home_ids()
            self._last_tick_at = now

            outcomes = await asyncio.gather(
                *(self._evaluate_home(home_id, minutes) for home_id in home_ids)
            )
            self.ticks_completed += 1
            return {home_id: results for home_id, results in zip(home_ids, outcomes)}

    async def _evaluate_home(self, home_id: int, minutes: Sequence[datetime]) -> List[ExecutionResult]:
        try:
            async with self.engine_factory() as engine:
                results = await engine.evaluate_rules(home_id, candidate_minutes=minutes)
        except Exception as e:
            logger.error(f"Rule evaluation failed for home {home_id}: {e}")
            return []

        if results:
            logger.info(f"Home {home_id}: {len(results)} rule(s) executed")
        return results


def session_factories(
    broadcaster: Optional[Broadcaster] = None,
    device_write_timeout: Optional[float] = None,
):
    """Factories opening a fresh database session per home and per tick."""

    @asynccontextmanager
    async def engine_factory() -> AsyncIterator[AutomationEngine]:
        async with AsyncSessionLocal() as db:
            yield build_engine(
                db,
                broadcaster=broadcaster,
                policy=AutomationPolicy.from_settings(),
                device_write_timeout=device_write_timeout,
            )

    @asynccontextmanager
    async def home_directory_factory() -> AsyncIterator[HomeDirectory]:
        async with AsyncSessionLocal() as db:
            # Once per tick, so policy edits from other processes apply
            await cfg.reload_cache(db)
            yield SqlHomeDirectory(db)

    return engine_factory, home_directory_factory
