"""Automation router: rules, modes, evaluation, undo, logs and policy settings."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.models.automation_rule import AutomationRule, AutomationLog
from app.models.home import Home
from app.models.user import User
from app.services import app_settings as cfg
from app.services.auth import require_admin, require_home_id, require_user
from app.services.automation_engine import AutomationEngine, build_engine
from app.services.automation_errors import (
    AutomationError,
    AutomationValidationError,
    NotFoundError,
    UndoRejectedError,
)
from app.services.automation_modes import MODES, ModeActivator, build_mode_activator
from app.services.automation_policy import AutomationPolicy
from app.services.automation_rules import validate_rule_payload
from app.services.realtime import Broadcaster, get_broadcaster

router = APIRouter()
settings = get_settings()

POLICY_SETTING_KEYS = {
    "default_tariff_rate": "tariff",
    "automation_default_min_savings": "automation",
    "automation_manual_override_minutes": "automation",
    "automation_fatigue_limit": "automation",
    "automation_fatigue_window_minutes": "automation",
    "automation_undo_window_hours": "automation",
}


# Request/Response models

class RuleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    trigger: Dict[str, Any]
    action: Dict[str, Any]
    constraints: Dict[str, Any] = {}
    overrides: Dict[str, Any] = {}
    priority: int = Field(default=5, ge=1, le=10)
    enabled: bool = True


class RuleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    trigger: Optional[Dict[str, Any]] = None
    action: Optional[Dict[str, Any]] = None
    constraints: Optional[Dict[str, Any]] = None
    overrides: Optional[Dict[str, Any]] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    enabled: Optional[bool] = None


class PauseRequest(BaseModel):
    duration_minutes: int = Field(gt=0, le=7 * 24 * 60)


class PolicySettingsUpdate(BaseModel):
    default_tariff_rate: Optional[float] = Field(default=None, gt=0)
    automation_default_min_savings: Optional[float] = Field(default=None, ge=0)
    automation_manual_override_minutes: Optional[int] = Field(default=None, ge=0)
    automation_fatigue_limit: Optional[int] = Field(default=None, ge=1)
    automation_fatigue_window_minutes: Optional[int] = Field(default=None, ge=1)
    automation_undo_window_hours: Optional[int] = Field(default=None, ge=1)


# Dependencies

async def get_engine(
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> AutomationEngine:
    await cfg.reload_cache(db)
    return build_engine(
        db,
        broadcaster=broadcaster,
        policy=AutomationPolicy.from_settings(),
        device_write_timeout=settings.automation_device_write_timeout_seconds,
    )


async def get_mode_activator(
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ModeActivator:
    return build_mode_activator(db, broadcaster=broadcaster)


def _http_error(e: AutomationError) -> HTTPException:
    """Map an automation error to its HTTP status."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UndoRejectedError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _rule_to_dict(rule: AutomationRule) -> dict:
    """Convert rule to response dict."""
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "enabled": rule.enabled,
        "priority": rule.priority,
        "trigger": rule.trigger,
        "action": rule.action,
        "constraints": rule.constraints or {},
        "overrides": rule.overrides or {},
        "last_triggered": _iso(rule.last_triggered),
        "trigger_count": rule.trigger_count,
        "undo_count": rule.undo_count,
        "success_rate": rule.success_rate,
        "created_at": _iso(rule.created_at),
        "updated_at": _iso(rule.updated_at),
    }


def _log_to_dict(log: AutomationLog) -> dict:
    """Convert log entry to response dict."""
    return {
        "id": log.id,
        "rule_id": log.rule_id,
        "action": log.action or {},
        "trigger": log.trigger or {},
        "reasoning": log.reasoning,
        "safety_checks": log.safety_checks or [],
        "estimated_impact": log.estimated_impact or {},
        "actual_impact": log.actual_impact,
        "executed": log.executed,
        "skip_reason": log.skip_reason,
        "user_response": log.user_response,
        "timestamp": _iso(log.timestamp),
    }


async def _get_home_rule(db: AsyncSession, rule_id: int, home_id: int) -> AutomationRule:
    result = await db.execute(
        select(AutomationRule).where(AutomationRule.id == rule_id, AutomationRule.home_id == home_id)
    )
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


# --- Rules ---

@router.get("/rules")
async def list_rules(
    enabled_only: bool = False,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """List the home's automation rules, highest priority first."""
    query = select(AutomationRule).where(AutomationRule.home_id == home_id)
    if enabled_only:
        query = query.where(AutomationRule.enabled == True)

    result = await db.execute(
        query.order_by(AutomationRule.priority.desc(), AutomationRule.created_at.desc())
    )
    return [_rule_to_dict(r) for r in result.scalars().all()]


@router.post("/rules", status_code=201)
async def create_rule(
    request: RuleCreateRequest,
    current_user: User = Depends(require_user),
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Create a new automation rule."""
    try:
        payload = validate_rule_payload(
            request.trigger, request.action, request.constraints, request.overrides
        )
    except AutomationValidationError as e:
        raise _http_error(e)

    rule = AutomationRule(
        home_id=home_id,
        user_id=current_user.id,
        name=request.name,
        description=request.description,
        priority=request.priority,
        enabled=request.enabled,
        **payload,
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)

    return _rule_to_dict(rule)


@router.get("/rules/{rule_id}")
async def get_rule(
    rule_id: int,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Get a specific automation rule."""
    rule = await _get_home_rule(db, rule_id, home_id)
    return _rule_to_dict(rule)


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: int,
    request: RuleUpdateRequest,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Update an automation rule. Changed payloads are re-validated as a whole."""
    rule = await _get_home_rule(db, rule_id, home_id)
    update_data = request.model_dump(exclude_unset=True)

    payload_fields = ("trigger", "action", "constraints", "overrides")
    if any(f in update_data for f in payload_fields):
        try:
            payload = validate_rule_payload(
                update_data.get("trigger", rule.trigger),
                update_data.get("action", rule.action),
                update_data.get("constraints", rule.constraints),
                update_data.get("overrides", rule.overrides),
            )
        except AutomationValidationError as e:
            raise _http_error(e)
        update_data.update(payload)

    for field, value in update_data.items():
        setattr(rule, field, value)

    await db.commit()
    await db.refresh(rule)
    return _rule_to_dict(rule)


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: int,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Delete an automation rule. Its logs are kept."""
    rule = await _get_home_rule(db, rule_id, home_id)
    await db.delete(rule)
    await db.commit()
    return {"status": "deleted"}


@router.post("/rules/{rule_id}/toggle")
async def toggle_rule(
    rule_id: int,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Toggle a rule's enabled state."""
    rule = await _get_home_rule(db, rule_id, home_id)
    rule.enabled = not rule.enabled
    await db.commit()

    return {"id": rule.id, "enabled": rule.enabled}


# --- Modes ---

@router.get("/modes")
async def list_modes():
    """Available one-shot modes."""
    return MODES


@router.post("/modes/{mode}/activate")
async def activate_mode(
    mode: str,
    current_user: User = Depends(require_user),
    activator: ModeActivator = Depends(get_mode_activator),
):
    """Apply a mode to the caller's home immediately."""
    try:
        return await activator.activate_mode(current_user.home_id, mode, user_id=current_user.id)
    except AutomationError as e:
        raise _http_error(e)


# --- Evaluation, undo and status ---

@router.post("/evaluate")
async def evaluate_rules(
    home_id: int = Depends(require_home_id),
    engine: AutomationEngine = Depends(get_engine),
):
    """Evaluate the home's rules for the current minute."""
    try:
        results = await engine.evaluate_rules(home_id)
    except AutomationError as e:
        raise _http_error(e)
    return {"results": [r.to_dict() for r in results]}


@router.post("/undo/{log_id}")
async def undo_action(
    log_id: int,
    home_id: int = Depends(require_home_id),
    engine: AutomationEngine = Depends(get_engine),
):
    """Reverse one executed automation."""
    log = await engine.audit_log.get(log_id)
    if log is None or log.home_id != home_id:
        raise HTTPException(status_code=404, detail="Automation log not found")

    try:
        return await engine.undo_action(log_id)
    except AutomationError as e:
        raise _http_error(e)


@router.get("/logs")
async def list_logs(
    limit: int = Query(default=50, ge=1, le=200),
    executed: Optional[bool] = None,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Automation log for the home, newest first."""
    query = select(AutomationLog).where(AutomationLog.home_id == home_id)
    if executed is not None:
        query = query.where(AutomationLog.executed == executed)

    result = await db.execute(
        query.order_by(AutomationLog.timestamp.desc(), AutomationLog.id.desc()).limit(limit)
    )
    return [_log_to_dict(log) for log in result.scalars().all()]


@router.get("/status")
async def get_status(
    home_id: int = Depends(require_home_id),
    engine: AutomationEngine = Depends(get_engine),
):
    """Rule counts and recent activity for the home."""
    try:
        return await engine.get_status(home_id)
    except AutomationError as e:
        raise _http_error(e)


# --- Pause ---

@router.post("/pause")
async def pause_automation(
    request: PauseRequest,
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Stop rule evaluation for the home for a while."""
    paused_until = datetime.utcnow() + timedelta(minutes=request.duration_minutes)
    await db.execute(
        update(Home).where(Home.id == home_id).values(automation_paused_until=paused_until)
    )
    await db.commit()
    return {"paused_until": paused_until.isoformat()}


@router.delete("/pause")
async def resume_automation(
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """Resume rule evaluation for the home."""
    await db.execute(
        update(Home).where(Home.id == home_id).values(automation_paused_until=None)
    )
    await db.commit()
    return {"paused_until": None}


# --- Policy settings ---

@router.get("/settings")
async def get_policy_settings(
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Current automation policy values."""
    await cfg.reload_cache(db)
    policy = AutomationPolicy.from_settings()
    return {
        "default_tariff_rate": policy.default_tariff_rate,
        "automation_default_min_savings": policy.default_min_savings,
        "automation_manual_override_minutes": policy.manual_override_minutes,
        "automation_fatigue_limit": policy.fatigue_limit,
        "automation_fatigue_window_minutes": policy.fatigue_window_minutes,
        "automation_undo_window_hours": policy.undo_window_hours,
    }


@router.put("/settings")
async def update_policy_settings(
    request: PolicySettingsUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Update automation policy values.

    Other processes pick the change up on their next tick or engine request.
    """
    await cfg.ensure_cache(db)
    update_data = request.model_dump(exclude_none=True)

    for category in set(POLICY_SETTING_KEYS.values()):
        updates = {
            key: str(value) for key, value in update_data.items()
            if POLICY_SETTING_KEYS[key] == category
        }
        if updates:
            await cfg.update_settings_bulk(db, updates, category=category)

    return await get_policy_settings(current_user=current_user, db=db)
