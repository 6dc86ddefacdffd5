"""Database-backed application settings model."""

from sqlalchemy import Column, Integer, String, Text, DateTime, func
from app.database import Base


class AppSettings(Base):
    """Key-value store for user-tunable settings.

    Automation policy (tariff fallback, safety thresholds, undo window) is
    stored here instead of environment variables so it can be changed at
    runtime.
    """

    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=True)
    category = Column(String(100), nullable=False, default="general")
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


# Default settings seeded on first run
DEFAULT_APP_SETTINGS = [
    # Tariff
    {"key": "default_tariff_rate", "value": "5.5", "category": "tariff"},
    # Automation safety checks
    {"key": "automation_default_min_savings", "value": "5", "category": "automation"},
    {"key": "automation_manual_override_minutes", "value": "30", "category": "automation"},
    {"key": "automation_fatigue_limit", "value": "3", "category": "automation"},
    {"key": "automation_fatigue_window_minutes", "value": "60", "category": "automation"},
    # Undo
    {"key": "automation_undo_window_hours", "value": "24", "category": "automation"},
    # Multi-user settings
    {"key": "registration_enabled", "value": "true", "category": "general"},
]
