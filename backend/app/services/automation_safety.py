"""Safety check pipeline run on every due rule before it executes.

Checks run in a fixed order and stop at the first failure; checks after a
failure are neither run nor logged. Structural checks on the target devices
come first, the audit-log history query last.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Sequence

from app.models.automation_rule import AutomationRule
from app.models.device import Device
from app.services.automation_policy import AutomationPolicy
from app.services.automation_stores import AuditLogStore

logger = logging.getLogger(__name__)


@dataclass
class SafetyCheckResult:
    check: str
    passed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"check": self.check, "passed": self.passed, "reason": self.reason}


@dataclass
class SafetyDecision:
    allowed: bool
    checks: List[SafetyCheckResult] = field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        failed = [c for c in self.checks if not c.passed]
        return failed[0].reason if failed else None


@dataclass
class SafetyContext:
    """Everything a check may look at. ``devices`` are the resolved targets."""

    rule: AutomationRule
    devices: List[Device]
    now: datetime
    tariff_rate: float
    audit_log: AuditLogStore
    policy: AutomationPolicy


SafetyCheck = Callable[[SafetyContext], Awaitable[SafetyCheckResult]]


async def check_essential_devices(ctx: SafetyContext) -> SafetyCheckResult:
    essential = [d for d in ctx.devices if d.is_essential]
    if essential:
        return SafetyCheckResult(
            check="essential_devices",
            passed=False,
            reason=f"Cannot automate essential devices: {', '.join(d.name for d in essential)}",
        )
    return SafetyCheckResult(check="essential_devices", passed=True)


async def check_user_override(ctx: SafetyContext) -> SafetyCheckResult:
    window = timedelta(minutes=ctx.policy.manual_override_minutes)
    recent = [
        d for d in ctx.devices
        if d.last_manual_control is not None and ctx.now - d.last_manual_control < window
    ]
    if recent:
        return SafetyCheckResult(
            check="user_override",
            passed=False,
            reason=f"Devices recently controlled manually: {', '.join(d.name for d in recent)}",
        )
    return SafetyCheckResult(check="user_override", passed=True)


async def check_minimum_savings(ctx: SafetyContext) -> SafetyCheckResult:
    estimated = ctx.policy.estimate_savings(len(ctx.devices), ctx.tariff_rate)
    min_savings = ctx.rule.constraints_spec.min_savings
    if min_savings is None:
        min_savings = ctx.policy.default_min_savings

    if estimated < min_savings:
        return SafetyCheckResult(
            check="minimum_savings",
            passed=False,
            reason=f"Estimated savings {estimated:.2f} below threshold {min_savings:g}",
        )
    return SafetyCheckResult(check="minimum_savings", passed=True)


async def check_automation_fatigue(ctx: SafetyContext) -> SafetyCheckResult:
    since = ctx.now - timedelta(minutes=ctx.policy.fatigue_window_minutes)
    recent_actions = await ctx.audit_log.count_executed_since(ctx.rule.home_id, since)
    if recent_actions >= ctx.policy.fatigue_limit:
        return SafetyCheckResult(
            check="automation_fatigue",
            passed=False,
            reason=(
                f"Too many automated actions ({recent_actions}) in the last "
                f"{ctx.policy.fatigue_window_minutes} minutes"
            ),
        )
    return SafetyCheckResult(check="automation_fatigue", passed=True)


SAFETY_CHECKS: Sequence[SafetyCheck] = (
    check_essential_devices,
    check_user_override,
    check_minimum_savings,
    check_automation_fatigue,
)


async def run_safety_checks(
    ctx: SafetyContext, checks: Sequence[SafetyCheck] = SAFETY_CHECKS
) -> SafetyDecision:
    """Run ``checks`` in order, stopping at the first failure."""
    results: List[SafetyCheckResult] = []

    for check in checks:
        result = await check(ctx)
        results.append(result)
        if not result.passed:
            logger.info(f"Rule {ctx.rule.id} blocked by {result.check}: {result.reason}")
            return SafetyDecision(allowed=False, checks=results)

    return SafetyDecision(allowed=True, checks=results)
