import asyncio
from datetime import datetime

import pytest

from app.models.automation_rule import AutomationLog, AutomationRule
from app.models.device import Device, DeviceStatus
from app.models.home import Home
from app.services.automation_engine import AutomationEngine
from app.services.automation_errors import NotFoundError
from app.services.automation_modes import ModeActivator
from app.services.automation_policy import AutomationPolicy

# Monday
MONDAY_18_00 = datetime(2024, 1, 1, 18, 0, 0)


class FakeDeviceRegistry:
    def __init__(self):
        self.devices = {}
        self.fail_ids = set()
        self.slow_ids = set()
        self.saved = []

    async def find(self, home_id):
        found = [d for d in self.devices.values() if d.home_id == home_id]
        return sorted(found, key=lambda d: d.name)

    async def find_by_ids(self, device_ids):
        return [self.devices[i] for i in device_ids if i in self.devices]

    async def save(self, device):
        if device.id in self.slow_ids:
            await asyncio.sleep(1)
        if device.id in self.fail_ids:
            raise RuntimeError("device offline")
        if device.id not in self.devices:
            raise NotFoundError(f"Device {device.id} not found")
        self.saved.append((device.id, device.snapshot()))


class FakeRuleStore:
    def __init__(self):
        self.rules = {}
        self.saved = []
        self.error = None

    async def find_enabled(self, home_id):
        found = [r for r in self.rules.values() if r.home_id == home_id and r.enabled]
        return sorted(found, key=lambda r: (-r.priority, r.id))

    async def get(self, rule_id):
        return self.rules.get(rule_id)

    async def save(self, rule):
        if self.error is not None:
            raise self.error
        self.saved.append(rule.id)

    async def count_enabled(self, home_id):
        return len([r for r in self.rules.values() if r.home_id == home_id and r.enabled])


class FakeAuditLog:
    def __init__(self):
        self.logs = {}

    async def create(self, log):
        log.id = len(self.logs) + 1
        self.logs[log.id] = log
        return log.id

    async def get(self, log_id):
        return self.logs.get(log_id)

    async def count_executed_since(self, home_id, since):
        return len([
            log for log in self.logs.values()
            if log.home_id == home_id and log.executed and log.timestamp >= since
        ])

    async def count_undone_since(self, home_id, since):
        return len([
            log for log in self.logs.values()
            if log.home_id == home_id and log.is_undone and log.timestamp >= since
        ])

    async def mark_undone(self, log_id, response):
        log = self.logs.get(log_id)
        if log is None or log.user_response is not None:
            return False
        log.user_response = response
        return True

    def executed(self):
        return [log for log in self.logs.values() if log.executed]

    def skipped(self):
        return [log for log in self.logs.values() if not log.executed]


class FakeTariffs:
    def __init__(self, rate=5.5):
        self.rate = rate
        self.error = None

    async def flat_rate(self, home_id):
        if self.error is not None:
            raise self.error
        return self.rate


class FakeHomes:
    def __init__(self):
        self.homes = {}
        self.error = None

    async def list_home_ids(self):
        if self.error is not None:
            raise self.error
        return sorted(self.homes)

    async def get(self, home_id):
        return self.homes.get(home_id)


class FakeActivity:
    def __init__(self):
        self.entries = []

    async def record(self, home_id, user_id, action, details, extra=None):
        self.entries.append({
            "home_id": home_id,
            "user_id": user_id,
            "action": action,
            "details": details,
            "extra": extra or {},
        })


class RecordingBroadcaster:
    def __init__(self):
        self.messages = []
        self.fail = False

    async def publish(self, home_id, event, payload):
        if self.fail:
            raise ConnectionError("redis down")
        self.messages.append((home_id, event, payload))


class AutomationHarness:
    """In-memory home with devices, rules and an audit log."""

    def __init__(self):
        self.now = MONDAY_18_00
        self.devices = FakeDeviceRegistry()
        self.rules = FakeRuleStore()
        self.audit_log = FakeAuditLog()
        self.tariffs = FakeTariffs()
        self.homes = FakeHomes()
        self.activity = FakeActivity()
        self.broadcaster = RecordingBroadcaster()
        self.policy = AutomationPolicy(default_min_savings=0.0)

    def clock(self):
        return self.now

    def add_home(self, home_id=1, timezone="UTC", **kwargs):
        home = Home(id=home_id, name=f"Home {home_id}", timezone=timezone, **kwargs)
        self.homes.homes[home_id] = home
        return home

    def add_device(self, device_id, name, category="Light", home_id=1, priority=5,
                   is_active=True, current_power=100.0, rated_power=100.0, **kwargs):
        device = Device(
            id=device_id,
            home_id=home_id,
            name=name,
            category=category,
            priority=priority,
            is_active=is_active,
            status=DeviceStatus.ON if is_active else DeviceStatus.OFF,
            current_power=current_power if is_active else 0.0,
            rated_power=rated_power,
            **kwargs,
        )
        self.devices.devices[device_id] = device
        return device

    def add_rule(self, rule_id, action, trigger=None, home_id=1, priority=5,
                 constraints=None, enabled=True, name=None):
        rule = AutomationRule(
            id=rule_id,
            home_id=home_id,
            name=name or f"Rule {rule_id}",
            enabled=enabled,
            priority=priority,
            trigger=trigger or {"kind": "time", "hour": 18, "minute": 0, "days": ["Mon"]},
            action=action,
            constraints=constraints or {},
            overrides={},
            trigger_count=0,
            undo_count=0,
            success_rate=100.0,
        )
        self.rules.rules[rule_id] = rule
        return rule

    def add_log(self, log_id, action_type, device_ids, timestamp=None, executed=True,
                previous_state=None, rule_id=None, home_id=1):
        log = AutomationLog(
            id=log_id,
            rule_id=rule_id,
            home_id=home_id,
            action={
                "type": action_type,
                "devices": list(device_ids),
                "parameters": {},
                "previous_state": previous_state or {},
            },
            trigger={"trigger_type": "manual", "value": None},
            safety_checks=[],
            estimated_impact={},
            executed=executed,
            user_response=None,
            timestamp=timestamp or self.now,
        )
        self.audit_log.logs[log_id] = log
        return log

    def engine(self, device_write_timeout=None):
        return AutomationEngine(
            devices=self.devices,
            rules=self.rules,
            audit_log=self.audit_log,
            tariffs=self.tariffs,
            homes=self.homes,
            broadcaster=self.broadcaster,
            policy=self.policy,
            clock=self.clock,
            device_write_timeout=device_write_timeout,
        )

    def mode_activator(self):
        return ModeActivator(
            devices=self.devices,
            audit_log=self.audit_log,
            activity=self.activity,
            broadcaster=self.broadcaster,
            clock=self.clock,
        )


@pytest.fixture
def harness():
    h = AutomationHarness()
    h.add_home()
    return h
