from datetime import datetime

import pytest

from app.models.automation_rule import AutomationRule
from app.services.automation_errors import AutomationValidationError
from app.services.automation_rules import (
    ActionKind,
    compute_success_rate,
    parse_action,
    parse_constraints,
    validate_rule_payload,
)

TIME_TRIGGER = {"kind": "time", "hour": 18, "minute": 0, "days": ["Mon"]}


@pytest.mark.parametrize(
    ("trigger_count", "undo_count", "expected"),
    [
        (10, 3, 70.0),
        (0, 0, 100.0),
        (4, 0, 100.0),
        (2, 5, 0.0),
    ],
)
def test_success_rate(trigger_count, undo_count, expected):
    assert compute_success_rate(trigger_count, undo_count) == expected


def test_rule_metadata_tracks_triggers_and_undos():
    rule = AutomationRule(id=1, trigger_count=0, undo_count=0, success_rate=100.0)
    fired_at = datetime(2024, 1, 1, 18, 0)

    for _ in range(10):
        rule.record_trigger(fired_at)
    for _ in range(3):
        rule.record_undo()

    assert rule.trigger_count == 10
    assert rule.undo_count == 3
    assert rule.last_triggered == fired_at
    assert rule.success_rate == 70.0


def test_action_defaults_and_category_filter():
    action = parse_action({"kind": "turn_off", "target_devices": [1, 2]})

    assert action.kind == ActionKind.TURN_OFF
    assert action.device_filter == "explicit"
    assert action.exceptions == []

    with pytest.raises(ValueError):
        parse_action({"kind": "turn_off", "device_filter": "category"})


def test_constraints_default_to_ten_devices_and_no_savings_override():
    constraints = parse_constraints(None)

    assert constraints.max_devices == 10
    assert constraints.min_savings is None


def test_validate_rule_payload_normalizes_json():
    payload = validate_rule_payload(
        TIME_TRIGGER,
        {"kind": "set_mode", "target_devices": [4], "parameters": {"mode": "eco"}},
    )

    assert payload["trigger"] == {"kind": "time", "hour": 18, "minute": 0, "days": ["Mon"]}
    assert payload["action"]["kind"] == "set_mode"
    assert payload["action"]["parameters"]["mode"] == "eco"
    assert payload["constraints"]["max_devices"] == 10
    assert payload["overrides"]["allow_manual_override"] is True


def test_validate_rule_payload_rejects_reduce_power():
    with pytest.raises(AutomationValidationError, match="reduce_power"):
        validate_rule_payload(TIME_TRIGGER, {"kind": "reduce_power", "target_devices": [1]})


def test_validate_rule_payload_rejects_too_many_explicit_targets():
    with pytest.raises(AutomationValidationError, match="max_devices"):
        validate_rule_payload(
            TIME_TRIGGER,
            {"kind": "turn_off", "target_devices": [1, 2, 3]},
            {"max_devices": 2},
        )


def test_validate_rule_payload_reports_field_errors():
    with pytest.raises(AutomationValidationError) as exc_info:
        validate_rule_payload({"kind": "time", "hour": 30, "minute": 0}, {"kind": "turn_off"})

    assert "hour" in str(exc_info.value)
