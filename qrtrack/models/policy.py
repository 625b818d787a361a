"""
Per-user working policy: working hours, weekly schedule and custom holidays.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from qrtrack.db.base import Base

WEEKDAY_COLUMNS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class WorkingPolicy(Base):
    __tablename__ = "working_policies"

    user_id: str = Column(String(64), primary_key=True)  # type: ignore[assignment]
    organization_id: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    work_start: str = Column(String(5), nullable=False, default="09:00")  # type: ignore[assignment]
    work_end: str = Column(String(5), nullable=False, default="17:00")  # type: ignore[assignment]
    timezone: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    monday: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    tuesday: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    wednesday: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    thursday: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    friday: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    saturday: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    sunday: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def weekly_schedule(self) -> tuple[bool, ...]:
        return tuple(bool(getattr(self, day)) for day in WEEKDAY_COLUMNS)


class CustomHoliday(Base):
    __tablename__ = "custom_holidays"
    __table_args__ = (Index("ix_holiday_user_date", "user_id", "date"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    organization_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    date: str = Column(String(10), nullable=False)  # type: ignore[assignment]  # YYYY-MM-DD
    reason: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    recurrence: str = Column(String(10), nullable=False, default="none")  # type: ignore[assignment]
    # none | weekly | monthly | yearly
