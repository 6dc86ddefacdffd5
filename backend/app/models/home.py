"""Home model: tariff, timezone and automation pause state."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Float, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Home(Base):
    """A household whose devices are managed together."""

    __tablename__ = "homes"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    name: Mapped[str] = mapped_column(String(200))
    owner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", use_alter=True))

    # Rule times are interpreted in this zone
    timezone: Mapped[str] = mapped_column(String(64), default="Asia/Kolkata")

    # Tariff (flat plan only; other plans fall back to the default rate)
    tariff_plan: Mapped[str] = mapped_column(String(20), default="flat")
    tariff_flat_rate: Mapped[Optional[float]] = mapped_column(Float)  # cost per kWh
    currency: Mapped[str] = mapped_column(String(8), default="INR")

    # Automation pause (set from the automation page)
    automation_paused_until: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_paused(self, now: datetime) -> bool:
        """Whether automation is paused at ``now`` (naive UTC)."""
        return self.automation_paused_until is not None and self.automation_paused_until > now

    def __repr__(self) -> str:
        return f"<Home(id={self.id}, name={self.name})>"
