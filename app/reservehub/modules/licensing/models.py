from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.reservehub.models import Base
from app.reservehub.utils import utcnow


class LicenseState(Base):
    """
    Single-row table (id=1) holding this instance's last validated entitlement.
    `valid` is not stored: it is always derived from `status`.
    """

    __tablename__ = "license_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    license_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="CORE")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="invalid")
    features: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma-separated
    last_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class IssuedLicense(Base):
    """Platform-side record of a license sold to a customer instance."""

    __tablename__ = "issued_licenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    license_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    holder_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    holder_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="CORE")
    # active | suspended | cancelled
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    addon_sms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    addon_floorplan: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    addon_reporting: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    addon_guest_history: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    addon_event_ticketing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def addons(self) -> frozenset[str]:
        flags = {
            "sms": self.addon_sms,
            "floorplan": self.addon_floorplan,
            "reporting": self.addon_reporting,
            "guest_history": self.addon_guest_history,
            "event_ticketing": self.addon_event_ticketing,
        }
        return frozenset(k for k, enabled in flags.items() if enabled)
