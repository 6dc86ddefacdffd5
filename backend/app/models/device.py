"""Device model: live power and on/off state of an appliance."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Float, DateTime, Boolean, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
import enum

from app.database import Base

ESSENTIAL_PRIORITY = 9


class DeviceStatus(str, enum.Enum):
    """Device power status."""
    ON = "on"
    OFF = "off"
    IDLE = "idle"


class Device(Base):
    """A metered appliance in a home."""

    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    home_id: Mapped[int] = mapped_column(ForeignKey("homes.id"), index=True)

    name: Mapped[str] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(50), index=True)
    room: Mapped[Optional[str]] = mapped_column(String(100))

    # Power
    rated_power: Mapped[float] = mapped_column(Float, default=0.0)  # watts
    current_power: Mapped[float] = mapped_column(Float, default=0.0)  # watts
    status: Mapped[DeviceStatus] = mapped_column(SQLEnum(DeviceStatus), default=DeviceStatus.OFF)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    mode: Mapped[Optional[str]] = mapped_column(String(50))

    # 1-10; 9 and above is essential and never automated
    priority: Mapped[int] = mapped_column(Integer, default=5)

    last_manual_control: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_essential(self) -> bool:
        return (self.priority or 0) >= ESSENTIAL_PRIORITY

    def switch_on(self) -> None:
        """Turn on; power keeps the last reported value or falls back to rated power."""
        self.status = DeviceStatus.ON
        self.is_active = True
        if not self.current_power:
            self.current_power = self.rated_power or 1.0

    def switch_off(self) -> None:
        self.status = DeviceStatus.OFF
        self.is_active = False
        self.current_power = 0.0

    def snapshot(self) -> dict:
        """Mutable state captured before an automated change."""
        return {
            "status": _status_value(self.status),
            "is_active": bool(self.is_active),
            "current_power": self.current_power or 0.0,
            "mode": self.mode,
        }

    def to_update_payload(self) -> dict:
        """Real-time ``device-update`` payload."""
        return {
            "device_id": self.id,
            "is_active": bool(self.is_active),
            "current_power": self.current_power or 0.0,
            "status": _status_value(self.status),
        }

    def __repr__(self) -> str:
        return f"<Device(id={self.id}, name={self.name}, status={self.status})>"


def _status_value(status) -> Optional[str]:
    if status is None:
        return None
    return status.value if isinstance(status, DeviceStatus) else str(status)
