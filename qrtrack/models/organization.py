"""
Organization settings — the external configuration the core reads.

One row per organization: office location and geofence radius, the local
timezone that defines a calendar day, default working hours, and the
thresholds used to classify a day's status.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Integer, String

from qrtrack.db.base import Base


class OrganizationSettings(Base):
    __tablename__ = "organization_settings"

    organization_id: str = Column(String(64), primary_key=True)  # type: ignore[assignment]
    name: str | None = Column(String(200), nullable=True)  # type: ignore[assignment]
    latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    radius_m: float = Column(Float, nullable=False, default=500.0)  # type: ignore[assignment]
    timezone: str = Column(String(64), nullable=False, default="Asia/Kolkata")  # type: ignore[assignment]
    work_start: str = Column(String(5), nullable=False, default="09:00")  # type: ignore[assignment]
    work_end: str = Column(String(5), nullable=False, default="17:00")  # type: ignore[assignment]
    full_day_minutes: int = Column(Integer, nullable=False, default=480)  # type: ignore[assignment]
    half_day_minutes: int = Column(Integer, nullable=False, default=240)  # type: ignore[assignment]
    grace_minutes: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
