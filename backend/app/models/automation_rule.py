"""Automation rule and execution log models."""

from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy import String, Integer, Float, DateTime, Boolean, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.services.automation_rules import (
    compute_success_rate,
    parse_action,
    parse_constraints,
    parse_trigger,
)


class AutomationRule(Base):
    """User-defined trigger -> action rule scoped to a home."""

    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    # Ownership
    home_id: Mapped[int] = mapped_column(ForeignKey("homes.id"), index=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)

    # Rule identity
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)  # 1-10

    # {"kind": "time", "hour": 18, "minute": 0, "days": ["Mon"]}
    # {"kind": "condition", "condition_kind": "power_threshold", "value": 2000}
    # {"kind": "event", "event_kind": "peak_detected", "value": null}
    trigger: Mapped[Dict] = mapped_column(JSON)

    # {"kind": "turn_off", "target_devices": [1, 2], "exceptions": [],
    #  "device_filter": "explicit", "parameters": {"mode": null, ...}}
    action: Mapped[Dict] = mapped_column(JSON)

    constraints: Mapped[Dict] = mapped_column(JSON, default=dict)
    overrides: Mapped[Dict] = mapped_column(JSON, default=dict)

    # Metadata maintained by the engine
    last_triggered: Mapped[Optional[datetime]] = mapped_column(DateTime)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0)
    undo_count: Mapped[int] = mapped_column(Integer, default=0)
    success_rate: Mapped[float] = mapped_column(Float, default=100.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def trigger_spec(self):
        return parse_trigger(self.trigger)

    @property
    def action_spec(self):
        return parse_action(self.action)

    @property
    def constraints_spec(self):
        return parse_constraints(self.constraints)

    def record_trigger(self, now: datetime) -> None:
        self.trigger_count = (self.trigger_count or 0) + 1
        self.last_triggered = now
        self.refresh_success_rate()

    def record_undo(self) -> None:
        self.undo_count = (self.undo_count or 0) + 1
        self.refresh_success_rate()

    def refresh_success_rate(self) -> None:
        self.success_rate = compute_success_rate(self.trigger_count or 0, self.undo_count or 0)

    def __repr__(self) -> str:
        return f"<AutomationRule(id={self.id}, name={self.name}, home_id={self.home_id})>"


class AutomationLog(Base):
    """Audit record of one rule evaluation that fired, or of a mode activation.

    Written once; only ``user_response`` is set afterwards (by undo).
    """

    __tablename__ = "automation_logs"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    rule_id: Mapped[Optional[int]] = mapped_column(ForeignKey("automation_rules.id", ondelete="SET NULL"), index=True)
    home_id: Mapped[int] = mapped_column(ForeignKey("homes.id"), index=True)

    # {"type": "turn_off", "devices": [1, 2], "parameters": {...},
    #  "previous_state": {"1": {"status": "on", ...}}}
    action: Mapped[Dict] = mapped_column(JSON, default=dict)

    # {"trigger_type": "time" | "manual", "value": ...}
    trigger: Mapped[Dict] = mapped_column(JSON, default=dict)

    reasoning: Mapped[Optional[str]] = mapped_column(Text)

    # [{"check": "essential_devices", "passed": true, "reason": null}, ...]
    safety_checks: Mapped[List[Dict]] = mapped_column(JSON, default=list)

    # {"savings": 0.55, "affected_devices": 1, "duration": 60}
    estimated_impact: Mapped[Dict] = mapped_column(JSON, default=dict)
    actual_impact: Mapped[Optional[Dict]] = mapped_column(JSON(none_as_null=True))

    executed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(Text)

    # {"type": "undone", "timestamp": "...", "response_time_ms": 1234}
    user_response: Mapped[Optional[Dict]] = mapped_column(JSON(none_as_null=True))

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    @property
    def action_type(self) -> Optional[str]:
        return (self.action or {}).get("type")

    @property
    def device_ids(self) -> List[int]:
        return list((self.action or {}).get("devices") or [])

    @property
    def is_undone(self) -> bool:
        return bool(self.user_response) and self.user_response.get("type") == "undone"

    def __repr__(self) -> str:
        return f"<AutomationLog(id={self.id}, rule_id={self.rule_id}, executed={self.executed})>"
