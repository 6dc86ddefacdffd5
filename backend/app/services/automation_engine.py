"""Automation engine: evaluates due rules, executes them, and undoes them.

Flow per home and tick: due rules (trigger evaluation) -> safety checks ->
execution (device writes + real-time updates) -> rule metadata -> audit log.
Undo reverses one logged execution and never re-runs the rule.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.database import AsyncSessionLocal
from app.models.automation_rule import AutomationLog, AutomationRule
from app.models.device import Device
from app.services.automation_errors import (
    AutomationError,
    AutomationValidationError,
    NotFoundError,
    UndoRejectedError,
)
from app.services.automation_policy import AutomationPolicy
from app.services.automation_rules import ActionKind, RuleAction
from app.services.automation_safety import (
    SafetyCheckResult,
    SafetyContext,
    SafetyDecision,
    run_safety_checks,
)
from app.services.automation_stores import (
    AuditLogStore,
    DeviceRegistry,
    HomeDirectory,
    RuleStore,
    SqlAuditLogStore,
    SqlDeviceRegistry,
    SqlHomeDirectory,
    SqlRuleStore,
    SqlTariffSource,
    TariffSource,
)
from app.services.automation_triggers import is_rule_due, resolve_zone, to_local
from app.services.realtime import DEVICE_UPDATE_EVENT, Broadcaster

logger = logging.getLogger(__name__)

# Action types written by mode activation (see automation_modes)
TURN_OFF_LIKE = {ActionKind.TURN_OFF.value, "away_mode", "sleep_mode"}
SNAPSHOT_RESTORED = {ActionKind.SET_MODE.value, "eco_mode"}


@dataclass
class ExecutionResult:
    success: bool
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    devices_affected: List[str] = field(default_factory=list)
    devices_failed: List[Dict[str, Any]] = field(default_factory=list)
    log_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "devices_affected": self.devices_affected,
            "devices_failed": self.devices_failed,
            "log_id": self.log_id,
            "error": self.error,
        }


@dataclass
class DeviceChangeOutcome:
    succeeded: List[Device] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    previous_state: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def any_applied(self) -> bool:
        """False only when every attempted device write failed."""
        return bool(self.succeeded) or not self.failed


async def publish_safely(broadcaster: Optional[Broadcaster], home_id: int, event: str, payload: Dict) -> None:
    """Best-effort real-time publish; failures never reach the caller."""
    if broadcaster is None:
        return
    try:
        await broadcaster.publish(home_id, event, payload)
    except Exception as e:
        logger.warning(f"Real-time update for home {home_id} dropped: {e}")


async def apply_device_changes(
    home_id: int,
    devices: Sequence[Device],
    mutate: Callable[[Device], None],
    registry: DeviceRegistry,
    broadcaster: Optional[Broadcaster],
    timeout: Optional[float] = None,
) -> DeviceChangeOutcome:
    """Mutate, persist and announce each device; one failure never stops the rest."""
    outcome = DeviceChangeOutcome()

    for device in devices:
        before = device.snapshot()
        try:
            mutate(device)
            if timeout is not None:
                await asyncio.wait_for(registry.save(device), timeout=timeout)
            else:
                await registry.save(device)
        except asyncio.TimeoutError:
            logger.warning(f"Device {device.id} write timed out after {timeout}s")
            outcome.failed.append({"device_id": device.id, "name": device.name, "error": "timeout"})
            continue
        except Exception as e:
            logger.warning(f"Device {device.id} write failed: {e}")
            outcome.failed.append({"device_id": device.id, "name": device.name, "error": str(e)})
            continue

        outcome.succeeded.append(device)
        outcome.previous_state[str(device.id)] = before
        await publish_safely(broadcaster, home_id, DEVICE_UPDATE_EVENT, device.to_update_payload())

    return outcome


class AutomationEngine:
    """Rule evaluation, execution and undo for one home at a time."""

    def __init__(
        self,
        devices: DeviceRegistry,
        rules: RuleStore,
        audit_log: AuditLogStore,
        tariffs: TariffSource,
        homes: HomeDirectory,
        broadcaster: Optional[Broadcaster] = None,
        policy: Optional[AutomationPolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        device_write_timeout: Optional[float] = None,
    ):
        self.devices = devices
        self.rules = rules
        self.audit_log = audit_log
        self.tariffs = tariffs
        self.homes = homes
        self.broadcaster = broadcaster
        self.policy = policy or AutomationPolicy()
        self.clock = clock
        self.device_write_timeout = device_write_timeout

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_rules(
        self,
        home_id: int,
        candidate_minutes: Optional[Sequence[datetime]] = None,
    ) -> List[ExecutionResult]:
        """Evaluate every enabled rule of a home and execute the due ones.

        ``candidate_minutes`` are naive UTC minute starts to test time
        triggers against (the scheduler passes the minutes elapsed since its
        last tick); by default only the current minute is tested. Rules
        rejected by a safety check are logged and do not appear in the
        returned results.
        """
        now = self.clock()
        home = await self.homes.get(home_id)
        if home is None:
            raise NotFoundError(f"Home {home_id} not found")

        if home.is_paused(now):
            logger.info(f"Automation paused for home {home_id} until {home.automation_paused_until}")
            return []

        zone = resolve_zone(home.timezone)
        local_minutes = [to_local(m, zone) for m in (candidate_minutes or [now])]

        rules = await self.rules.find_enabled(home_id)
        results = []

        for rule in rules:
            last_local = to_local(rule.last_triggered, zone) if rule.last_triggered else None
            if not is_rule_due(rule, local_minutes, last_local):
                continue

            try:
                result = await self.run_rule(rule, now)
            except AutomationError as e:
                logger.warning(f"Rule {rule.id} ({rule.name}) not executed: {e}")
                result = ExecutionResult(success=False, rule_id=rule.id, rule_name=rule.name, error=str(e))
            except Exception as e:
                logger.error(f"Rule execution error for rule {rule.id}: {e}")
                result = ExecutionResult(success=False, rule_id=rule.id, rule_name=rule.name, error=str(e))

            if result is not None:
                results.append(result)

        return results

    async def run_rule(self, rule: AutomationRule, now: datetime) -> Optional[ExecutionResult]:
        """Safety-check and execute one due rule. Returns None when the rule was skipped."""
        try:
            action = rule.action_spec
        except ValueError as e:
            raise AutomationValidationError(f"Invalid action on rule {rule.id}: {e}") from e

        if action.kind == ActionKind.REDUCE_POWER:
            raise AutomationValidationError("reduce_power is not supported by rule execution")

        targets = await self.resolve_targets(rule.home_id, action)
        tariff_rate = await self.tariff_rate(rule.home_id)

        if not targets:
            decision = SafetyDecision(
                allowed=False,
                checks=[SafetyCheckResult("target_devices", False, "No target devices")],
            )
            logger.info(f"Rule {rule.id} has no target devices in home {rule.home_id}")
            await self.log_skipped(rule, action, targets, decision, tariff_rate, now)
            return None

        decision = await run_safety_checks(
            SafetyContext(
                rule=rule,
                devices=targets,
                now=now,
                tariff_rate=tariff_rate,
                audit_log=self.audit_log,
                policy=self.policy,
            )
        )
        if not decision.allowed:
            await self.log_skipped(rule, action, targets, decision, tariff_rate, now)
            return None

        return await self.execute_rule(rule, action, targets, decision, tariff_rate, now)

    async def resolve_targets(self, home_id: int, action: RuleAction) -> List[Device]:
        """Devices the action applies to, exceptions removed, restricted to the home."""
        if action.device_filter == "explicit":
            devices = await self.devices.find_by_ids(action.target_devices)
            devices = [d for d in devices if d.home_id == home_id]
        else:
            devices = await self.devices.find(home_id)
            if action.device_filter == "category":
                wanted = set(action.parameters.categories)
                devices = [d for d in devices if d.category in wanted]

        excluded = set(action.exceptions)
        return [d for d in devices if d.id not in excluded]

    async def tariff_rate(self, home_id: int) -> float:
        try:
            return await self.tariffs.flat_rate(home_id)
        except Exception as e:
            logger.warning(f"Tariff unavailable for home {home_id}, using default: {e}")
            return self.policy.default_tariff_rate

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_rule(
        self,
        rule: AutomationRule,
        action: RuleAction,
        devices: List[Device],
        decision: SafetyDecision,
        tariff_rate: float,
        now: datetime,
    ) -> ExecutionResult:
        """Apply the action to every target device, then update metadata and log."""
        outcome = await apply_device_changes(
            rule.home_id,
            devices,
            _rule_mutation(action),
            self.devices,
            self.broadcaster,
        )
        executed = outcome.any_applied

        if executed:
            rule.record_trigger(now)
            try:
                await self.rules.save(rule)
            except Exception as e:
                # Devices already changed; the log below must still be written
                logger.warning(f"Metadata update for rule {rule.id} failed: {e}")

        affected = len(outcome.succeeded)
        log = AutomationLog(
            rule_id=rule.id,
            home_id=rule.home_id,
            action={
                "type": action.kind.value,
                "devices": [d.id for d in outcome.succeeded],
                "parameters": action.parameters.model_dump(mode="json"),
                "previous_state": outcome.previous_state,
            },
            trigger=_trigger_snapshot(rule),
            reasoning=f'Rule "{rule.name}" triggered',
            safety_checks=[c.to_dict() for c in decision.checks],
            estimated_impact={
                "savings": round(self.policy.estimate_savings(affected, tariff_rate), 2),
                "affected_devices": affected,
            },
            executed=executed,
            skip_reason=None if executed else "All device updates failed",
            timestamp=now,
        )
        log_id = await self.audit_log.create(log)

        if executed:
            logger.info(f"Automation executed: {rule.name} ({affected} devices)")
        else:
            logger.warning(f"Automation {rule.name} failed on every device")

        return ExecutionResult(
            success=executed,
            rule_id=rule.id,
            rule_name=rule.name,
            devices_affected=[d.name for d in outcome.succeeded],
            devices_failed=outcome.failed,
            log_id=log_id,
            error=None if executed else "All device updates failed",
        )

    async def log_skipped(
        self,
        rule: AutomationRule,
        action: RuleAction,
        devices: List[Device],
        decision: SafetyDecision,
        tariff_rate: float,
        now: datetime,
    ) -> int:
        log = AutomationLog(
            rule_id=rule.id,
            home_id=rule.home_id,
            action={
                "type": action.kind.value,
                "devices": [d.id for d in devices],
                "parameters": action.parameters.model_dump(mode="json"),
            },
            trigger=_trigger_snapshot(rule),
            reasoning=f'Rule "{rule.name}" skipped by safety checks',
            safety_checks=[c.to_dict() for c in decision.checks],
            estimated_impact={
                "savings": round(self.policy.estimate_savings(len(devices), tariff_rate), 2),
                "affected_devices": len(devices),
            },
            executed=False,
            skip_reason=decision.reason,
            timestamp=now,
        )
        return await self.audit_log.create(log)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo_action(self, log_id: int) -> Dict[str, Any]:
        """Reverse the device effect of one executed log entry.

        The log is claimed before any device is touched, so a second call
        (or a concurrent one) is rejected instead of toggling twice.
        """
        now = self.clock()
        log = await self.audit_log.get(log_id)
        if log is None:
            raise NotFoundError(f"Automation log {log_id} not found")
        if not log.executed:
            raise UndoRejectedError("Action was not executed")
        if log.user_response:
            raise UndoRejectedError(f"Action already {log.user_response.get('type', 'answered')}")
        if now - log.timestamp > timedelta(hours=self.policy.undo_window_hours):
            raise UndoRejectedError("Undo window has expired")

        inverse = _inverse_mutation(log)

        response = {
            "type": "undone",
            "timestamp": now.isoformat(),
            "response_time_ms": int((now - log.timestamp).total_seconds() * 1000),
        }
        if not await self.audit_log.mark_undone(log.id, response):
            raise UndoRejectedError("Action already undone")

        wanted = log.device_ids
        devices = await self.devices.find_by_ids(wanted)
        found = {d.id for d in devices}
        missing = [
            {"device_id": device_id, "name": None, "error": "not found"}
            for device_id in wanted if device_id not in found
        ]

        outcome = await apply_device_changes(
            log.home_id,
            devices,
            inverse,
            self.devices,
            self.broadcaster,
            timeout=self.device_write_timeout,
        )
        failed = missing + outcome.failed
        restored = [d.name for d in outcome.succeeded]

        if restored and log.rule_id is not None:
            await self._record_rule_undo(log.rule_id)

        logger.info(f"Undid automation log {log.id}: {len(restored)} restored, {len(failed)} failed")

        if wanted and not restored:
            return {
                "success": False,
                "error": "No devices could be restored",
                "devices_restored": [],
                "devices_failed": failed,
            }
        return {
            "success": True,
            "message": "Action undone successfully",
            "devices_restored": restored,
            "devices_failed": failed,
        }

    async def _record_rule_undo(self, rule_id: int) -> None:
        try:
            rule = await self.rules.get(rule_id)
            if rule is None:
                return
            rule.record_undo()
            await self.rules.save(rule)
        except Exception as e:
            # The log is already claimed, so the undo itself stands
            logger.warning(f"Undo count update for rule {rule_id} failed: {e}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self, home_id: int) -> Dict[str, Any]:
        now = self.clock()
        home = await self.homes.get(home_id)
        if home is None:
            raise NotFoundError(f"Home {home_id} not found")

        active_rules = await self.rules.count_enabled(home_id)
        recent_actions = await self.audit_log.count_executed_since(home_id, now - timedelta(hours=24))
        undone_actions = await self.audit_log.count_undone_since(home_id, now - timedelta(days=7))
        paused_until = home.automation_paused_until if home.is_paused(now) else None

        return {
            "active_rules": active_rules,
            "recent_actions": recent_actions,
            "undone_actions": undone_actions,
            "automation_enabled": active_rules > 0,
            "paused_until": paused_until.isoformat() if paused_until else None,
        }


def _trigger_snapshot(rule: AutomationRule) -> Dict[str, Any]:
    trigger = rule.trigger or {}
    return {"trigger_type": trigger.get("kind"), "value": trigger}


def _rule_mutation(action: RuleAction) -> Callable[[Device], None]:
    if action.kind == ActionKind.TURN_OFF:
        return lambda device: device.switch_off()

    if action.kind == ActionKind.TURN_ON:
        return lambda device: device.switch_on()

    if action.kind == ActionKind.SET_MODE:
        mode = action.parameters.mode or "eco"

        def set_mode(device: Device) -> None:
            device.mode = mode

        return set_mode

    raise AutomationValidationError(f"Unsupported action: {action.kind.value}")


def _inverse_mutation(log: AutomationLog) -> Callable[[Device], None]:
    action_type = log.action_type

    if action_type in TURN_OFF_LIKE:
        return lambda device: device.switch_on()

    if action_type == ActionKind.TURN_ON.value:
        return lambda device: device.switch_off()

    if action_type in SNAPSHOT_RESTORED:
        previous = (log.action or {}).get("previous_state")
        if not previous:
            raise UndoRejectedError(f"No saved state to undo {action_type}")

        def restore(device: Device) -> None:
            before = previous.get(str(device.id))
            if before is None:
                raise ValueError("no saved state for device")
            device.mode = before.get("mode")
            if action_type == "eco_mode" and device.is_active:
                device.current_power = before.get("current_power", device.current_power)

        return restore

    raise UndoRejectedError(f"Action {action_type} cannot be undone")


def build_engine(
    db: AsyncSession,
    broadcaster: Optional[Broadcaster] = None,
    policy: Optional[AutomationPolicy] = None,
    device_write_timeout: Optional[float] = None,
) -> AutomationEngine:
    """Engine wired to SQL collaborators sharing one session.

    Timed device writes get a session each, so a write cut off by the
    timeout cannot break the shared session used for logs and rules.
    """
    policy = policy or AutomationPolicy.from_settings()
    write_sessions = AsyncSessionLocal if device_write_timeout is not None else None
    return AutomationEngine(
        devices=SqlDeviceRegistry(db, write_sessions=write_sessions),
        rules=SqlRuleStore(db),
        audit_log=SqlAuditLogStore(db),
        tariffs=SqlTariffSource(db, policy.default_tariff_rate),
        homes=SqlHomeDirectory(db),
        broadcaster=broadcaster,
        policy=policy,
        device_write_timeout=device_write_timeout,
    )
