"""Typed shapes for automation rule triggers, actions and settings.

Rules persist their trigger/action/constraints/overrides as JSON columns.
These models are the single place those payloads are parsed and validated,
so the engine dispatches on a closed set of trigger and action kinds.
"""

import enum
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from app.services.automation_errors import AutomationValidationError


class Weekday(str, enum.Enum):
    MON = "Mon"
    TUE = "Tue"
    WED = "Wed"
    THU = "Thu"
    FRI = "Fri"
    SAT = "Sat"
    SUN = "Sun"

    @classmethod
    def from_datetime(cls, value: datetime) -> "Weekday":
        return list(cls)[value.weekday()]


class ActionKind(str, enum.Enum):
    TURN_OFF = "turn_off"
    TURN_ON = "turn_on"
    SET_MODE = "set_mode"
    REDUCE_POWER = "reduce_power"


class _Shape(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=False)


class TimeTrigger(_Shape):
    kind: Literal["time"] = "time"
    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)
    days: List[Weekday] = []


class ConditionTrigger(_Shape):
    kind: Literal["condition"] = "condition"
    condition_kind: Literal["power_threshold", "budget_threshold", "device_state"]
    value: Any = None


class EventTrigger(_Shape):
    kind: Literal["event"] = "event"
    event_kind: Literal["tariff_change", "peak_detected", "user_away"]
    value: Optional[str] = None


RuleTrigger = Annotated[
    Union[TimeTrigger, ConditionTrigger, EventTrigger],
    Field(discriminator="kind"),
]

_trigger_adapter: TypeAdapter = TypeAdapter(RuleTrigger)


class ActionParameters(_Shape):
    mode: Optional[str] = None
    reduction: Optional[float] = None
    target_temp: Optional[float] = None
    categories: List[str] = []


class RuleAction(_Shape):
    kind: ActionKind
    target_devices: List[int] = []
    exceptions: List[int] = []
    device_filter: Literal["explicit", "all", "all_except", "category"] = "explicit"
    parameters: ActionParameters = ActionParameters()

    @model_validator(mode="after")
    def _category_filter_needs_categories(self):
        if self.device_filter == "category" and not self.parameters.categories:
            raise ValueError("device_filter 'category' requires parameters.categories")
        return self


class ComfortLimits(_Shape):
    min_temp: Optional[float] = None
    max_temp: Optional[float] = None


class RuleConstraints(_Shape):
    max_devices: int = Field(default=10, ge=1)
    min_savings: Optional[float] = Field(default=None, ge=0)
    comfort_limits: ComfortLimits = ComfortLimits()


class RuleOverrides(_Shape):
    allow_manual_override: bool = True
    override_duration_minutes: int = Field(default=120, ge=0)
    pause_if_recent_activity: bool = True


def parse_trigger(data: Any) -> Union[TimeTrigger, ConditionTrigger, EventTrigger]:
    """Parse a stored trigger payload into its typed variant."""
    return _trigger_adapter.validate_python(data)


def parse_action(data: Any) -> RuleAction:
    return RuleAction.model_validate(data)


def parse_constraints(data: Any) -> RuleConstraints:
    return RuleConstraints.model_validate(data or {})


def parse_overrides(data: Any) -> RuleOverrides:
    return RuleOverrides.model_validate(data or {})


def compute_success_rate(trigger_count: int, undo_count: int) -> float:
    """Share of executions that were not undone, in percent.

    Defined as 100 when the rule has never fired. Clamped to [0, 100].
    """
    if not trigger_count or trigger_count <= 0:
        return 100.0
    rate = (trigger_count - (undo_count or 0)) / trigger_count * 100
    return max(0.0, min(100.0, rate))


def validate_rule_payload(
    trigger: Any,
    action: Any,
    constraints: Any = None,
    overrides: Any = None,
) -> Dict[str, Dict]:
    """Validate a rule submitted through the API and return normalized JSON.

    Rules whose action the executor cannot carry out are refused here
    rather than failing on every tick.
    """
    try:
        parsed_trigger = parse_trigger(trigger)
        parsed_action = parse_action(action)
        parsed_constraints = parse_constraints(constraints)
        parsed_overrides = parse_overrides(overrides)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise AutomationValidationError(f"Invalid rule: {errors}") from e

    if parsed_action.kind == ActionKind.REDUCE_POWER:
        raise AutomationValidationError("Action 'reduce_power' is not supported")

    if (
        parsed_action.device_filter == "explicit"
        and len(parsed_action.target_devices) > parsed_constraints.max_devices
    ):
        raise AutomationValidationError(
            f"Rule targets {len(parsed_action.target_devices)} devices, "
            f"more than max_devices ({parsed_constraints.max_devices})"
        )

    return {
        "trigger": parsed_trigger.model_dump(mode="json"),
        "action": parsed_action.model_dump(mode="json"),
        "constraints": parsed_constraints.model_dump(mode="json"),
        "overrides": parsed_overrides.model_dump(mode="json"),
    }
