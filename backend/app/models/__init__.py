"""Database models."""

from app.models.user import User
from app.models.home import Home
from app.models.device import Device, DeviceStatus
from app.models.automation_rule import AutomationRule, AutomationLog
from app.models.activity_log import ActivityLog
from app.models.app_settings import AppSettings

__all__ = [
    "User",
    "Home",
    "Device",
    "DeviceStatus",
    "AutomationRule",
    "AutomationLog",
    "ActivityLog",
    "AppSettings",
]
