from datetime import datetime

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from app.database import get_db
from app.models.user import User
from app.routers import automation, devices
from app.services.auth import require_user
from app.services.realtime import get_broadcaster


class _FakeSession:
    def __init__(self):
        self.added = []
        self.committed = False

    def add(self, obj):
        self.added.append(obj)

    async def commit(self):
        self.committed = True

    async def refresh(self, obj):
        obj.id = len(self.added)
        obj.created_at = datetime(2024, 1, 1)


def _app(harness, user, db=None):
    app = FastAPI()
    app.include_router(automation.router, prefix="/api/automation")
    app.include_router(devices.router, prefix="/api/devices")

    async def override_get_db():
        yield db or _FakeSession()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_user] = lambda: user
    app.dependency_overrides[automation.get_engine] = lambda: harness.engine()
    app.dependency_overrides[automation.get_mode_activator] = lambda: harness.mode_activator()
    app.dependency_overrides[get_broadcaster] = lambda: harness.broadcaster
    return app


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def member():
    return User(id=7, username="asha", email="asha@example.com", home_id=1, is_admin=False)


@pytest.mark.asyncio
async def test_mode_activation_endpoint(harness, member):
    harness.add_device(1, "Lamp")
    harness.add_device(2, "Fridge", category="Refrigerator")

    async with _client(_app(harness, member)) as client:
        response = await client.post("/api/automation/modes/away/activate")
        unknown = await client.post("/api/automation/modes/party/activate")
        catalogue = await client.get("/api/automation/modes")

    assert response.status_code == 200
    assert response.json()["affected_devices"] == ["Lamp"]
    assert unknown.status_code == 400
    assert "Unknown mode" in unknown.json()["detail"]
    assert [m["id"] for m in catalogue.json()] == ["away", "sleep", "eco"]
    assert harness.activity.entries[0]["user_id"] == 7


@pytest.mark.asyncio
async def test_undo_endpoint_maps_errors(harness, member):
    harness.add_device(1, "Lamp", is_active=False)
    harness.add_log(1, "turn_off", [1])
    harness.add_log(2, "turn_off", [1], home_id=2)

    async with _client(_app(harness, member)) as client:
        first = await client.post("/api/automation/undo/1")
        again = await client.post("/api/automation/undo/1")
        missing = await client.post("/api/automation/undo/99")
        other_home = await client.post("/api/automation/undo/2")

    assert first.status_code == 200
    assert first.json()["devices_restored"] == ["Lamp"]
    assert again.status_code == 409
    assert missing.status_code == 404
    assert other_home.status_code == 404


@pytest.mark.asyncio
async def test_evaluate_and_status_endpoints(harness, member):
    harness.add_device(1, "Lamp")
    harness.add_rule(1, {"kind": "turn_off", "target_devices": [1]})

    async with _client(_app(harness, member)) as client:
        evaluated = await client.post("/api/automation/evaluate")
        status = await client.get("/api/automation/status")

    assert evaluated.status_code == 200
    (result,) = evaluated.json()["results"]
    assert result["success"] is True
    assert result["devices_affected"] == ["Lamp"]
    assert status.json()["recent_actions"] == 1
    assert status.json()["automation_enabled"] is True


@pytest.mark.asyncio
async def test_user_without_home_is_rejected(harness):
    homeless = User(id=8, username="guest", email="guest@example.com", home_id=None)

    async with _client(_app(harness, homeless)) as client:
        status = await client.get("/api/automation/status")
        mode = await client.post("/api/automation/modes/away/activate")

    assert status.status_code == 400
    assert status.json()["detail"] == "No home assigned"
    assert mode.status_code == 400


@pytest.mark.asyncio
async def test_create_rule_validates_payload(harness, member):
    db = _FakeSession()
    trigger = {"kind": "time", "hour": 18, "minute": 0, "days": ["Mon", "Tue"]}

    async with _client(_app(harness, member, db)) as client:
        rejected = await client.post(
            "/api/automation/rules",
            json={"name": "Trim", "trigger": trigger, "action": {"kind": "reduce_power"}},
        )
        created = await client.post(
            "/api/automation/rules",
            json={
                "name": "Evening",
                "trigger": trigger,
                "action": {"kind": "turn_off", "target_devices": [1, 2]},
                "constraints": {"min_savings": 1},
            },
        )

    assert rejected.status_code == 400
    assert created.status_code == 201
    body = created.json()
    assert body["action"]["device_filter"] == "explicit"
    assert body["constraints"]["min_savings"] == 1
    (rule,) = db.added
    assert rule.home_id == 1
    assert rule.user_id == 7
    assert db.committed is True


@pytest.mark.asyncio
async def test_manual_toggle_blocks_automation(harness, member, monkeypatch):
    lamp = harness.add_device(1, "Lamp")
    harness.add_rule(1, {"kind": "turn_off", "target_devices": [1]})
    monkeypatch.setattr(devices, "SqlDeviceRegistry", lambda db: harness.devices)
    monkeypatch.setattr(devices, "SqlActivityRecorder", lambda db: harness.activity)

    class _FrozenDatetime(datetime):
        @classmethod
        def utcnow(cls):
            return harness.now

    monkeypatch.setattr(devices, "datetime", _FrozenDatetime)

    async with _client(_app(harness, member)) as client:
        toggled = await client.post("/api/devices/1/toggle")
        toggled_back = await client.post("/api/devices/1/toggle")
        missing = await client.post("/api/devices/99/toggle")
        evaluated = await client.post("/api/automation/evaluate")

    assert toggled.json()["is_active"] is False
    assert toggled_back.json()["is_active"] is True
    assert missing.status_code == 404
    assert lamp.last_manual_control is not None
    assert [m[1] for m in harness.broadcaster.messages] == ["device-update", "device-update"]
    assert [e["action"] for e in harness.activity.entries] == ["DEVICE_TOGGLE", "DEVICE_TOGGLE"]

    # Manual control moments ago holds off the rule
    assert evaluated.json()["results"] == []
    (skipped,) = harness.audit_log.skipped()
    assert skipped.safety_checks[-1]["check"] == "user_override"
