"""One-shot household modes (away, sleep, eco).

Modes are user-initiated and treated as pre-consented, so they bypass the
safety checks. They share the engine's device-write and audit-log contract:
each activation writes one automation log (no rule) and one activity entry.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.automation_rule import AutomationLog
from app.models.device import Device
from app.services.automation_engine import apply_device_changes
from app.services.automation_errors import AutomationValidationError
from app.services.automation_stores import (
    ActivityRecorder,
    AuditLogStore,
    DeviceRegistry,
    SqlActivityRecorder,
    SqlAuditLogStore,
    SqlDeviceRegistry,
)
from app.services.realtime import Broadcaster

logger = logging.getLogger(__name__)

AWAY_KEEP_CATEGORIES = {"Refrigerator", "Security", "Medical"}
SLEEP_OFF_CATEGORIES = {"Light", "TV", "Entertainment"}
ECO_POWER_FACTOR = 0.8

MODES = [
    {
        "id": "away",
        "name": "Away Mode",
        "description": "Minimize consumption while you're out",
        "actions": [
            "Turn off every active device except refrigerators, security and medical equipment",
        ],
    },
    {
        "id": "sleep",
        "name": "Sleep Mode",
        "description": "Switch off lights and entertainment overnight",
        "actions": ["Turn off active lights, TVs and entertainment devices"],
    },
    {
        "id": "eco",
        "name": "Eco Mode",
        "description": "Maximum savings without sacrificing essentials",
        "actions": ["Set every active device to eco mode", "Reduce active power draw by 20%"],
    },
]

MODE_IDS = {mode["id"] for mode in MODES}


def _select_away(devices: List[Device]) -> List[Device]:
    return [d for d in devices if d.is_active and d.category not in AWAY_KEEP_CATEGORIES]


def _select_sleep(devices: List[Device]) -> List[Device]:
    return [d for d in devices if d.is_active and d.category in SLEEP_OFF_CATEGORIES]


def _select_eco(devices: List[Device]) -> List[Device]:
    return [d for d in devices if d.is_active]


def _apply_eco(device: Device) -> None:
    device.mode = "eco"
    device.current_power = round((device.current_power or 0) * ECO_POWER_FACTOR)


_MODE_PLANS: Dict[str, tuple] = {
    "away": (_select_away, lambda device: device.switch_off()),
    "sleep": (_select_sleep, lambda device: device.switch_off()),
    "eco": (_select_eco, _apply_eco),
}


class ModeActivator:
    """Applies a mode to a home's devices immediately."""

    def __init__(
        self,
        devices: DeviceRegistry,
        audit_log: AuditLogStore,
        activity: ActivityRecorder,
        broadcaster: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.devices = devices
        self.audit_log = audit_log
        self.activity = activity
        self.broadcaster = broadcaster
        self.clock = clock

    async def activate_mode(
        self, home_id: Optional[int], mode: str, user_id: Optional[int] = None
    ) -> Dict[str, Any]:
        if home_id is None:
            raise AutomationValidationError("No home assigned")
        if mode not in _MODE_PLANS:
            raise AutomationValidationError(
                f"Unknown mode '{mode}'. Must be one of: {', '.join(sorted(MODE_IDS))}"
            )

        select_devices, mutate = _MODE_PLANS[mode]
        targets = select_devices(await self.devices.find(home_id))

        outcome = await apply_device_changes(home_id, targets, mutate, self.devices, self.broadcaster)
        executed = outcome.any_applied
        affected = [d.name for d in outcome.succeeded]
        label = mode.capitalize()

        log = AutomationLog(
            rule_id=None,
            home_id=home_id,
            action={
                "type": f"{mode}_mode",
                "devices": [d.id for d in outcome.succeeded],
                "parameters": {"mode": mode},
                "previous_state": outcome.previous_state,
            },
            trigger={"trigger_type": "manual", "value": f"User activated {mode} mode"},
            reasoning=f"{label} mode activated by user",
            safety_checks=[],
            estimated_impact={"affected_devices": len(affected)},
            executed=executed,
            skip_reason=None if executed else "All device updates failed",
            timestamp=self.clock(),
        )
        log_id = await self.audit_log.create(log)

        await self.activity.record(
            home_id,
            user_id,
            "MODE_ACTIVATE",
            f"Activated {label} Mode",
            {"mode": mode, "affected_devices": len(affected)},
        )

        logger.info(f"{label} mode activated for home {home_id} ({len(affected)} devices)")

        return {
            "success": executed,
            "mode": mode,
            "affected_devices": affected,
            "devices_failed": outcome.failed,
            "log_id": log_id,
            "message": f"{label} mode activated" if executed else f"{label} mode failed on every device",
        }


def build_mode_activator(db: AsyncSession, broadcaster: Optional[Broadcaster] = None) -> ModeActivator:
    return ModeActivator(
        devices=SqlDeviceRegistry(db),
        audit_log=SqlAuditLogStore(db),
        activity=SqlActivityRecorder(db),
        broadcaster=broadcaster,
    )
