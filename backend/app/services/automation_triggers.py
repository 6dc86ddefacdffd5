"""Trigger evaluation: which enabled rules are due on this tick."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.automation_rules import (
    ConditionTrigger,
    EventTrigger,
    TimeTrigger,
    Weekday,
)

logger = logging.getLogger(__name__)


def is_time_trigger_due(trigger: TimeTrigger, local_now: datetime) -> bool:
    """Due iff hour and minute match exactly and the weekday is allowed."""
    if trigger.days and Weekday.from_datetime(local_now) not in trigger.days:
        return False
    return local_now.hour == trigger.hour and local_now.minute == trigger.minute


def is_trigger_due(trigger, local_now: datetime) -> bool:
    """Pure predicate over (trigger, local time)."""
    if isinstance(trigger, TimeTrigger):
        return is_time_trigger_due(trigger, local_now)
    if isinstance(trigger, (ConditionTrigger, EventTrigger)):
        # Condition and event triggers are fired by their producers, not by the clock
        return False
    raise TypeError(f"Unknown trigger type: {type(trigger).__name__}")


def is_rule_due(
    rule,
    candidate_minutes: Iterable[datetime],
    last_triggered_local: Optional[datetime] = None,
) -> bool:
    """Whether ``rule`` is due in any of ``candidate_minutes`` (local, minute precision).

    A minute in which the rule already fired is skipped, so repeated ticks
    inside one minute fire the rule once.
    """
    try:
        trigger = rule.trigger_spec
    except ValueError as e:
        logger.warning(f"Rule {rule.id} has an invalid trigger, skipping: {e}")
        return False

    fired_minute = _floor_minute(last_triggered_local) if last_triggered_local else None
    for minute in candidate_minutes:
        if fired_minute is not None and _floor_minute(minute) == fired_minute:
            continue
        if is_trigger_due(trigger, minute):
            return True
    return False


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


def to_local(utc_naive: datetime, zone: ZoneInfo) -> datetime:
    """Convert a naive UTC timestamp to naive local wall time."""
    return utc_naive.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


def minutes_between(after: Optional[datetime], until: datetime, max_minutes: int) -> List[datetime]:
    """Minute starts in ``(after, until]``, newest last, at most ``max_minutes``.

    With no previous tick only ``until``'s own minute is returned.
    """
    end = _floor_minute(until)
    if after is None:
        return [end]

    start = _floor_minute(after)
    count = int((end - start).total_seconds() // 60)
    count = max(0, min(count, max_minutes))
    return [end - timedelta(minutes=offset) for offset in reversed(range(count))]


def _floor_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)
