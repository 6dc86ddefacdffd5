"""API routers."""

from app.routers import (
    auth,
    automation,
    devices,
    health,
)

__all__ = [
    "auth",
    "automation",
    "devices",
    "health",
]
