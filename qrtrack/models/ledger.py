"""
Day ledger & attendance sessions — one ledger per user per local calendar day.

``version`` is SQLAlchemy's version counter: every UPDATE of a ledger row
is conditional on the version it was read at, so two writers cannot both
commit against the same snapshot.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, Index,
                        Integer, String, UniqueConstraint)
from sqlalchemy.orm import relationship

from qrtrack.db.base import Base


class DayLedger(Base):
    __tablename__ = "day_ledgers"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_ledger_user_date"),
        Index("ix_ledger_org_date", "organization_id", "date"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    organization_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    date: str = Column(String(10), nullable=False)  # type: ignore[assignment]  # YYYY-MM-DD, org-local
    total_working_minutes: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    status: str = Column(String(20), nullable=False, default="absent")  # type: ignore[assignment]
    # absent | present | half-day | full-day | holiday
    is_late: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    finalized: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    needs_review: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    review_note: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    override_status: str | None = Column(String(20), nullable=True)  # type: ignore[assignment]
    override_notes: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    override_by: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    version: int = Column(Integer, nullable=False, default=1)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    sessions = relationship(
        "AttendanceSession",
        back_populates="ledger",
        cascade="all, delete-orphan",
        order_by="AttendanceSession.check_in_at",
        lazy="selectin",
    )

    # Bumped explicitly on every mutation so a session-only change still
    # conflicts with a concurrent writer.
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def has_active_session(self) -> bool:
        return any(s.is_active for s in self.sessions)


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    ledger_id: int = Column(Integer, ForeignKey("day_ledgers.id"), nullable=False, index=True)  # type: ignore[assignment]

    check_in_at: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    check_in_latitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    check_in_longitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    check_in_accuracy: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    check_in_verified: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    check_in_qr_code_id: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]

    check_out_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    check_out_latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    check_out_longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    check_out_accuracy: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    check_out_verified: bool | None = Column(Boolean, nullable=True)  # type: ignore[assignment]
    check_out_qr_code_id: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]

    duration_minutes: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    clock_anomaly: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    device_id: str | None = Column(String(128), nullable=True)  # type: ignore[assignment]

    ledger = relationship("DayLedger", back_populates="sessions")

    @property
    def is_active(self) -> bool:
        return self.check_out_at is None
