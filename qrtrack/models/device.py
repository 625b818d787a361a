"""
Device binding & device change requests.

A user has at most one bound device and at most one *pending* change
request at a time.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, text

from qrtrack.db.base import Base


class DeviceBinding(Base):
    __tablename__ = "device_bindings"

    user_id: str = Column(String(64), primary_key=True)  # type: ignore[assignment]
    organization_id: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    device_id: str = Column(String(128), nullable=False)  # type: ignore[assignment]
    device_type: str | None = Column(String(50), nullable=True)  # type: ignore[assignment]
    device_fingerprint: str | None = Column(String(256), nullable=True)  # type: ignore[assignment]
    registered_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class DeviceChangeRequest(Base):
    __tablename__ = "device_change_requests"
    __table_args__ = (
        Index(
            "uq_device_request_pending_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_device_request_org_status", "organization_id", "status"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    organization_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    current_device_id: str | None = Column(String(128), nullable=True)  # type: ignore[assignment]
    requested_device_id: str = Column(String(128), nullable=False)  # type: ignore[assignment]
    requested_device_type: str | None = Column(String(50), nullable=True)  # type: ignore[assignment]
    requested_device_fingerprint: str | None = Column(String(256), nullable=True)  # type: ignore[assignment]
    reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    status: str = Column(String(20), nullable=False, default="pending")  # type: ignore[assignment]
    # pending | approved | rejected
    requested_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    resolved_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    resolved_by: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    admin_reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
