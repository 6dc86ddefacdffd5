"""Real-time device updates over Redis pub/sub.

Publishers (engine, mode activator, device router, Celery workers) push a
JSON envelope onto one channel; the API process subscribes and relays each
message to the WebSocket clients joined to that home.
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol

from redis import asyncio as aioredis

from app.config import get_settings

logger = logging.getLogger(__name__)

DEVICE_UPDATE_EVENT = "device-update"


class Broadcaster(Protocol):
    async def publish(self, home_id: int, event: str, payload: Dict[str, Any]) -> None: ...


def encode_message(home_id: int, event: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"home_id": home_id, "event": event, "payload": payload}, default=str)


def decode_message(raw: str) -> Optional[Dict[str, Any]]:
    """Parse a channel message; malformed messages are dropped."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Dropping malformed real-time message")
        return None
    if not isinstance(message, dict) or "home_id" not in message:
        return None
    return message


class RedisBroadcaster:
    """Fire-and-forget publisher. Delivery failures are logged and swallowed."""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.realtime_channel
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def publish(self, home_id: int, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self._get_client().publish(self.channel, encode_message(home_id, event, payload))
        except Exception as exc:
            logger.warning("Real-time publish failed for home %s: %s", home_id, exc)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None



_broadcaster: Optional[RedisBroadcaster] = None


def get_broadcaster() -> Broadcaster:
    """Process-wide publisher (FastAPI dependency)."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = RedisBroadcaster()
    return _broadcaster


async def close_broadcaster() -> None:
    global _broadcaster
    if _broadcaster is not None:
        await _broadcaster.close()
        _broadcaster = None
