"""Tunable automation policy, read from the database-backed settings cache."""

from dataclasses import dataclass

from app.services import app_settings as cfg


@dataclass(frozen=True)
class AutomationPolicy:
    default_tariff_rate: float = 5.5
    default_min_savings: float = 5.0
    manual_override_minutes: int = 30
    fatigue_limit: int = 3
    fatigue_window_minutes: int = 60
    undo_window_hours: int = 24
    # Savings model: each device is assumed to save this much per activation
    kwh_per_device: float = 0.1

    @classmethod
    def from_settings(cls) -> "AutomationPolicy":
        """Build from the settings cache; call ``cfg.ensure_cache()`` first."""
        return cls(
            default_tariff_rate=cfg.get_float("default_tariff_rate", cls.default_tariff_rate),
            default_min_savings=cfg.get_float("automation_default_min_savings", cls.default_min_savings),
            manual_override_minutes=cfg.get_int("automation_manual_override_minutes", cls.manual_override_minutes),
            fatigue_limit=cfg.get_int("automation_fatigue_limit", cls.fatigue_limit),
            fatigue_window_minutes=cfg.get_int("automation_fatigue_window_minutes", cls.fatigue_window_minutes),
            undo_window_hours=cfg.get_int("automation_undo_window_hours", cls.undo_window_hours),
        )

    def estimate_savings(self, device_count: int, tariff_rate: float) -> float:
        return device_count * self.kwh_per_device * tariff_rate
