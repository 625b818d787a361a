"""
Organization QR codes — the check-in / check-out tokens shown on screen.

Codes are never deleted: regeneration flips ``active`` off so the usage
history stays available for audit.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, text

from qrtrack.db.base import Base

QR_KINDS = ("check-in", "check-out", "auto")


class OrganizationQRCode(Base):
    __tablename__ = "organization_qr_codes"
    __table_args__ = (
        # Only one current code per organization and kind.
        Index(
            "uq_qr_active_org_kind",
            "organization_id",
            "kind",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
        Index("ix_qr_org_kind", "organization_id", "kind"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    organization_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    kind: str = Column(String(20), nullable=False)  # type: ignore[assignment]
    # check-in | check-out | auto
    code: str = Column(String(64), unique=True, nullable=False, index=True)  # type: ignore[assignment]
    issued_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    expires_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    validity_minutes: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    usage_count: int = Column(Integer, nullable=False, default=0, server_default="0")  # type: ignore[assignment]
    active: bool = Column(Boolean, nullable=False, default=True, server_default="1")  # type: ignore[assignment]
    deactivated_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
