"""Database-backed application settings service.

Automation policy and other user-tunable values live in the ``app_settings``
table and are read through an in-memory cache. Only infrastructure settings
(DATABASE_URL, REDIS_URL, scheduler runtime) remain environment variables.

The cache is per process. Schedulers call ``reload_cache`` once per tick so
a change saved through another process reaches them on the next tick.
"""

import logging
from typing import Callable, Dict, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import AsyncSessionLocal
from app.models.app_settings import AppSettings, DEFAULT_APP_SETTINGS

logger = logging.getLogger(__name__)

T = TypeVar("T")

_settings_cache: Dict[str, str] = {}
_cache_loaded = False


async def _load_cache(db: AsyncSession) -> None:
    global _settings_cache, _cache_loaded
    result = await db.execute(select(AppSettings))
    _settings_cache = {row.key: row.value or "" for row in result.scalars().all()}
    _cache_loaded = True


async def seed_defaults(db: AsyncSession) -> None:
    """Add any default key missing from the table, so readers never see a gap."""
    result = await db.execute(select(AppSettings.key))
    existing_keys = {row[0] for row in result.all()}

    missing = [item for item in DEFAULT_APP_SETTINGS if item["key"] not in existing_keys]
    for item in missing:
        db.add(AppSettings(**item))

    if missing:
        await db.commit()
        logger.info("Seeded %d new default application setting(s)", len(missing))


async def ensure_cache(db: Optional[AsyncSession] = None) -> None:
    """Populate the cache on first use; later calls are no-ops."""
    if not _cache_loaded:
        await reload_cache(db)


async def reload_cache(db: Optional[AsyncSession] = None) -> None:
    """Re-read every setting from the database."""
    if db is None:
        async with AsyncSessionLocal() as session:
            await seed_defaults(session)
            await _load_cache(session)
    else:
        await seed_defaults(db)
        await _load_cache(db)


def _parse(key: str, default: T, convert: Callable[[str], T]) -> T:
    raw = _settings_cache.get(key, "")
    if not raw:
        return default
    try:
        return convert(raw)
    except ValueError:
        logger.warning(f"Setting {key}={raw!r} is not valid, using {default}")
        return default


def get_bool(key: str, default: bool = False) -> bool:
    return _parse(key, default, lambda raw: raw.lower() in ("true", "1", "yes"))


def get_int(key: str, default: int = 0) -> int:
    return _parse(key, default, int)


def get_float(key: str, default: float = 0.0) -> float:
    return _parse(key, default, float)


async def update_settings_bulk(db: AsyncSession, updates: Dict[str, str], category: str = "general") -> None:
    """Upsert ``updates`` and refresh this process's cache."""
    result = await db.execute(select(AppSettings).where(AppSettings.key.in_(list(updates))))
    rows = {row.key: row for row in result.scalars().all()}

    for key, value in updates.items():
        if key in rows:
            rows[key].value = value
        else:
            db.add(AppSettings(key=key, value=value, category=category))
        _settings_cache[key] = value
    await db.commit()
