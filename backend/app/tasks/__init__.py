"""Background tasks."""

from app.tasks import automation

__all__ = ["automation"]
