"""Database configuration and session management."""

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.config import get_settings

settings = get_settings()

# Create async engine
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()
logger = logging.getLogger(__name__)

_TRANSIENT_ERROR_NAMES = {
    "CannotConnectNowError",
    "ConnectionDoesNotExistError",
    "ConnectionFailureError",
    "ConnectionRefusedError",
    "TooManyConnectionsError",
}

_TRANSIENT_MESSAGE_MARKERS = (
    "starting up",
    "in recovery mode",
    "cannot connect now",
    "connection refused",
)


def _is_transient_database_startup_error(exc: BaseException) -> bool:
    """Return whether an exception is likely transient during DB startup."""
    if isinstance(exc, (ConnectionRefusedError, OperationalError)):
        return True

    if isinstance(exc, DBAPIError):
        original_error = getattr(exc, "orig", None)
        if original_error is None:
            return True
        if original_error.__class__.__name__ in _TRANSIENT_ERROR_NAMES:
            return True

        message = str(original_error).lower()
        return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)

    return False


async def _apply_schema_migrations(conn) -> None:
    """Apply incremental schema migrations for columns added after initial release.

    ``create_all`` only creates missing tables. Columns introduced later are
    added here with idempotent ``ALTER TABLE ... ADD COLUMN`` statements.
    """
    migrations = [
        (
            "devices",
            "last_manual_control",
            "ALTER TABLE devices ADD COLUMN last_manual_control TIMESTAMP",
        ),
        (
            "devices",
            "mode",
            "ALTER TABLE devices ADD COLUMN mode VARCHAR(50)",
        ),
        (
            "homes",
            "automation_paused_until",
            "ALTER TABLE homes ADD COLUMN automation_paused_until TIMESTAMP",
        ),
    ]
    for table, column, ddl in migrations:
        result = await conn.execute(
            text(
                "SELECT 1 FROM information_schema.columns "
                "WHERE table_name = :table AND column_name = :column"
            ),
            {"table": table, "column": column},
        )
        if not result.fetchone():
            await conn.execute(text(ddl))
            logger.info("Added column %s.%s", table, column)


async def init_db(max_attempts: int = 30, initial_retry_delay_seconds: float = 1.0) -> None:
    """Initialize database tables, retrying while the server is starting up."""
    from app import models  # noqa: F401  registers every table on Base.metadata

    for attempt in range(1, max_attempts + 1):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                await _apply_schema_migrations(conn)
            return
        except (ConnectionRefusedError, OperationalError, DBAPIError) as exc:
            if not _is_transient_database_startup_error(exc) or attempt == max_attempts:
                raise

            retry_delay = min(initial_retry_delay_seconds * (2 ** (attempt - 1)), 30.0)
            logger.warning(
                "Database initialization attempt failed; retrying",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "exception_class": exc.__class__.__name__,
                    "retry_delay_seconds": retry_delay,
                },
            )
            await asyncio.sleep(retry_delay)


async def get_db() -> AsyncSession:
    """Get database session dependency."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
