"""Health check endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.config import get_settings

router = APIRouter()
settings = get_settings()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "version": settings.app_version}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check including database connectivity."""
    checks = {
        "database": False,
        "redis": False,
    }

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception:
        pass

    # Check Redis
    try:
        import redis
        r = redis.from_url(settings.redis_url)
        r.ping()
        checks["redis"] = True
    except Exception:
        pass

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
    }


@router.get("/health/automation")
async def automation_status(request: Request):
    """State of the in-process automation scheduler."""
    scheduler = getattr(request.app.state, "automation_scheduler", None)
    if scheduler is None:
        return {"mode": settings.automation_scheduler, "running": False}

    last_tick = scheduler.last_tick_at
    return {
        "mode": settings.automation_scheduler,
        "running": scheduler.is_running,
        "tick_seconds": scheduler.tick_seconds,
        "ticks_completed": scheduler.ticks_completed,
        "last_tick_at": last_tick.isoformat() if last_tick else None,
    }
