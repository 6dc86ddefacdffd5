import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

import pytest

from app.services.automation_scheduler import AutomationScheduler


def _scheduler(harness, on_engine=None, **kwargs):
    @asynccontextmanager
    async def engine_factory():
        if on_engine is not None:
            await on_engine()
        yield harness.engine()

    @asynccontextmanager
    async def home_directory_factory():
        yield harness.homes

    return AutomationScheduler(engine_factory, home_directory_factory, clock=harness.clock, **kwargs)


def _evening_rule(harness):
    harness.add_device(1, "Lamp")
    return harness.add_rule(1, {"kind": "turn_off", "target_devices": [1]})


@pytest.mark.asyncio
async def test_late_tick_catches_up_missed_trigger_minute(harness):
    rule = _evening_rule(harness)
    scheduler = _scheduler(harness)

    assert await scheduler.tick(datetime(2024, 1, 1, 17, 59, 30)) == {1: []}

    harness.now = datetime(2024, 1, 1, 18, 1, 10)
    outcomes = await scheduler.tick(harness.now)

    assert [r.rule_id for r in outcomes[1]] == [1]
    assert rule.trigger_count == 1


@pytest.mark.asyncio
async def test_ticks_inside_one_minute_fire_rule_once(harness):
    rule = _evening_rule(harness)
    scheduler = _scheduler(harness)

    harness.now = datetime(2024, 1, 1, 18, 0, 5)
    first = await scheduler.tick(harness.now)
    harness.now = datetime(2024, 1, 1, 18, 0, 40)
    second = await scheduler.tick(harness.now)

    assert len(first[1]) == 1
    assert second == {}
    assert rule.trigger_count == 1


@pytest.mark.asyncio
async def test_restarted_scheduler_does_not_refire_in_same_minute(harness):
    rule = _evening_rule(harness)

    harness.now = datetime(2024, 1, 1, 18, 0, 5)
    await _scheduler(harness).tick(harness.now)
    harness.now = datetime(2024, 1, 1, 18, 0, 50)
    outcomes = await _scheduler(harness).tick(harness.now)

    assert outcomes == {1: []}
    assert rule.trigger_count == 1


@pytest.mark.asyncio
async def test_ticks_are_serialized(harness):
    _evening_rule(harness)
    in_flight = {"now": 0, "max": 0}

    async def slow_engine():
        in_flight["now"] += 1
        in_flight["max"] = max(in_flight["max"], in_flight["now"])
        await asyncio.sleep(0.01)
        in_flight["now"] -= 1

    scheduler = _scheduler(harness, on_engine=slow_engine)

    first, second = await asyncio.gather(
        scheduler.tick(datetime(2024, 1, 1, 17, 59, 30)),
        scheduler.tick(datetime(2024, 1, 1, 18, 0, 30)),
    )

    assert in_flight["max"] == 1
    assert first == {1: []}
    assert [r.rule_id for r in second[1]] == [1]
    assert scheduler.ticks_completed == 2


@pytest.mark.asyncio
async def test_failing_home_does_not_stop_other_homes(harness):
    harness.add_home(home_id=2)
    _evening_rule(harness)
    find_enabled = harness.rules.find_enabled

    async def flaky_find_enabled(home_id):
        if home_id == 2:
            raise RuntimeError("connection reset")
        return await find_enabled(home_id)

    harness.rules.find_enabled = flaky_find_enabled

    outcomes = await _scheduler(harness).tick(harness.now)

    assert [r.rule_id for r in outcomes[1]] == [1]
    assert outcomes[2] == []


@pytest.mark.asyncio
async def test_minutes_stay_pending_when_homes_cannot_be_listed(harness):
    rule = _evening_rule(harness)
    scheduler = _scheduler(harness)
    await scheduler.tick(datetime(2024, 1, 1, 17, 59, 30))

    harness.homes.error = RuntimeError("database unavailable")
    with pytest.raises(RuntimeError):
        await scheduler.tick(datetime(2024, 1, 1, 18, 0, 10))

    harness.homes.error = None
    harness.now = datetime(2024, 1, 1, 18, 1, 5)
    outcomes = await scheduler.tick(harness.now)

    assert [r.rule_id for r in outcomes[1]] == [1]
    assert rule.trigger_count == 1


@pytest.mark.asyncio
async def test_start_and_stop(harness):
    rule = _evening_rule(harness)
    scheduler = _scheduler(harness, tick_seconds=0.01)

    scheduler.start()
    assert scheduler.is_running is True
    for _ in range(100):
        if scheduler.ticks_completed:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert scheduler.is_running is False
    assert scheduler.ticks_completed >= 1
    assert scheduler.last_tick_at == harness.now
    assert rule.trigger_count == 1
