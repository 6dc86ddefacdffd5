"""Collaborators the automation engine reads and writes through.

Each collaborator is a ``Protocol`` so the engine can be driven by
in-memory fakes; the ``Sql*`` classes are the production implementations
bound to one ``AsyncSession``.

Rows handed to the engine are detached from the session. Mutations are
written back with a single ``UPDATE ... WHERE id = :id`` per row (last
writer wins), never by flushing tracked objects.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity_log import ActivityLog
from app.models.automation_rule import AutomationLog, AutomationRule
from app.models.device import Device
from app.models.home import Home
from app.services.automation_errors import NotFoundError

logger = logging.getLogger(__name__)


class DeviceRegistry(Protocol):
    async def find(self, home_id: int) -> List[Device]: ...

    async def find_by_ids(self, device_ids: Sequence[int]) -> List[Device]: ...

    async def save(self, device: Device) -> None: ...


class RuleStore(Protocol):
    async def find_enabled(self, home_id: int) -> List[AutomationRule]: ...

    async def get(self, rule_id: int) -> Optional[AutomationRule]: ...

    async def save(self, rule: AutomationRule) -> None: ...

    async def count_enabled(self, home_id: int) -> int: ...


class AuditLogStore(Protocol):
    async def create(self, log: AutomationLog) -> int: ...

    async def get(self, log_id: int) -> Optional[AutomationLog]: ...

    async def count_executed_since(self, home_id: int, since: datetime) -> int: ...

    async def count_undone_since(self, home_id: int, since: datetime) -> int: ...

    async def mark_undone(self, log_id: int, response: Dict) -> bool: ...


class TariffSource(Protocol):
    async def flat_rate(self, home_id: int) -> float: ...


class HomeDirectory(Protocol):
    async def list_home_ids(self) -> List[int]: ...

    async def get(self, home_id: int) -> Optional[Home]: ...


class ActivityRecorder(Protocol):
    async def record(
        self,
        home_id: int,
        user_id: Optional[int],
        action: str,
        details: str,
        extra: Optional[Dict] = None,
    ) -> None: ...


def _detach(db: AsyncSession, rows):
    for row in rows:
        db.expunge(row)
    return rows


class SqlDeviceRegistry:
    """Device registry over the ``devices`` table.

    With ``write_sessions`` set, every ``save`` runs in its own short-lived
    session. A write cancelled by a timeout then only loses that session's
    connection and never the shared one the caller keeps using.
    """

    def __init__(self, db: AsyncSession, write_sessions: Optional[Callable[[], AsyncSession]] = None):
        self.db = db
        self.write_sessions = write_sessions

    async def find(self, home_id: int) -> List[Device]:
        result = await self.db.execute(
            select(Device).where(Device.home_id == home_id).order_by(Device.name)
        )
        return _detach(self.db, list(result.scalars().all()))

    async def find_by_ids(self, device_ids: Sequence[int]) -> List[Device]:
        if not device_ids:
            return []
        result = await self.db.execute(select(Device).where(Device.id.in_(list(device_ids))))
        return _detach(self.db, list(result.scalars().all()))

    async def save(self, device: Device) -> None:
        if self.write_sessions is None:
            await self._write(self.db, device)
            return
        async with self.write_sessions() as session:
            await self._write(session, device)

    async def _write(self, db: AsyncSession, device: Device) -> None:
        try:
            result = await db.execute(
                update(Device)
                .where(Device.id == device.id)
                .values(
                    status=device.status,
                    is_active=device.is_active,
                    current_power=device.current_power,
                    mode=device.mode,
                    last_manual_control=device.last_manual_control,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise

        if result.rowcount == 0:
            raise NotFoundError(f"Device {device.id} not found")


class SqlRuleStore:
    """Rule store over the ``automation_rules`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_enabled(self, home_id: int) -> List[AutomationRule]:
        result = await self.db.execute(
            select(AutomationRule)
            .where(AutomationRule.home_id == home_id, AutomationRule.enabled.is_(True))
            .order_by(AutomationRule.priority.desc(), AutomationRule.id)
        )
        return _detach(self.db, list(result.scalars().all()))

    async def get(self, rule_id: int) -> Optional[AutomationRule]:
        result = await self.db.execute(select(AutomationRule).where(AutomationRule.id == rule_id))
        rule = result.scalar_one_or_none()
        if rule is not None:
            self.db.expunge(rule)
        return rule

    async def save(self, rule: AutomationRule) -> None:
        """Persist engine-maintained metadata only; user edits go through the router."""
        try:
            await self.db.execute(
                update(AutomationRule)
                .where(AutomationRule.id == rule.id)
                .values(
                    last_triggered=rule.last_triggered,
                    trigger_count=rule.trigger_count,
                    undo_count=rule.undo_count,
                    success_rate=rule.success_rate,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def count_enabled(self, home_id: int) -> int:
        result = await self.db.execute(
            select(func.count(AutomationRule.id)).where(
                AutomationRule.home_id == home_id, AutomationRule.enabled.is_(True)
            )
        )
        return result.scalar() or 0


class SqlAuditLogStore:
    """Audit log over the ``automation_logs`` table. All queries are home-scoped."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, log: AutomationLog) -> int:
        if log.timestamp is None:
            log.timestamp = datetime.utcnow()
        self.db.add(log)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        self.db.expunge(log)
        return log.id

    async def get(self, log_id: int) -> Optional[AutomationLog]:
        result = await self.db.execute(select(AutomationLog).where(AutomationLog.id == log_id))
        log = result.scalar_one_or_none()
        if log is not None:
            self.db.expunge(log)
        return log

    async def count_executed_since(self, home_id: int, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(AutomationLog.id)).where(
                AutomationLog.home_id == home_id,
                AutomationLog.executed.is_(True),
                AutomationLog.timestamp >= since,
            )
        )
        return result.scalar() or 0

    async def count_undone_since(self, home_id: int, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(AutomationLog.id)).where(
                AutomationLog.home_id == home_id,
                AutomationLog.user_response["type"].as_string() == "undone",
                AutomationLog.timestamp >= since,
            )
        )
        return result.scalar() or 0

    async def mark_undone(self, log_id: int, response: Dict) -> bool:
        """Set ``user_response`` if still unset. Returns False when another caller got there first."""
        try:
            result = await self.db.execute(
                update(AutomationLog)
                .where(AutomationLog.id == log_id, AutomationLog.user_response.is_(None))
                .values(user_response=response)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return result.rowcount == 1


class SqlTariffSource:
    """Flat tariff rate from the home record, with a fallback rate."""

    def __init__(self, db: AsyncSession, default_rate: float):
        self.db = db
        self.default_rate = default_rate

    async def flat_rate(self, home_id: int) -> float:
        try:
            result = await self.db.execute(
                select(Home.tariff_flat_rate).where(Home.id == home_id)
            )
            rate = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Tariff lookup failed for home {home_id}, using default rate: {e}")
            await self.db.rollback()
            return self.default_rate

        if not rate or rate <= 0:
            return self.default_rate
        return float(rate)


class SqlHomeDirectory:
    """Homes known to the scheduler."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_home_ids(self) -> List[int]:
        result = await self.db.execute(select(Home.id).order_by(Home.id))
        return [row[0] for row in result.all()]

    async def get(self, home_id: int) -> Optional[Home]:
        result = await self.db.execute(select(Home).where(Home.id == home_id))
        home = result.scalar_one_or_none()
        if home is not None:
            self.db.expunge(home)
        return home


class SqlActivityRecorder:
    """Writes home activity entries. Failures are logged, never raised."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        home_id: int,
        user_id: Optional[int],
        action: str,
        details: str,
        extra: Optional[Dict] = None,
    ) -> None:
        entry = ActivityLog(
            home_id=home_id,
            user_id=user_id,
            action=action,
            details=details,
            extra_data=extra or {},
        )
        self.db.add(entry)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Failed to record activity {action} for home {home_id}: {e}")
