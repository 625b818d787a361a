"""
QR code registry — issuance, lookup, validity, usage counting and rotation.

The registry never commits; callers own the transaction so that a scan's
usage increment lands in the same commit as its ledger write.
"""

from __future__ import annotations

import enum
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock, ensure_utc, utc_now
from qrtrack.models.qr_code import OrganizationQRCode

logger = logging.getLogger(__name__)

# 24 random bytes -> 192 bits of entropy, 32 URL-safe characters.
CODE_BYTES = 24


class QRCodeState(str, enum.Enum):
    OK = "ok"
    EXPIRED = "expired"
    INACTIVE = "inactive"


def generate_code() -> str:
    return secrets.token_urlsafe(CODE_BYTES)


def qr_cache_prefix(organization_id: str) -> str:
    return f"qr:{organization_id}:"


def validate(qr: OrganizationQRCode, now: datetime) -> QRCodeState:
    """Pure activity / expiry check."""
    if not qr.active:
        return QRCodeState.INACTIVE
    if qr.expires_at is not None and ensure_utc(now) >= ensure_utc(qr.expires_at):
        return QRCodeState.EXPIRED
    return QRCodeState.OK


class QRCodeRegistry:
    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock = utc_now,
        cache: TTLCache | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.cache = cache

    def _invalidate(self, organization_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_on_commit(self.db, qr_cache_prefix(organization_id))

    async def current(self, organization_id: str, kind: str) -> OrganizationQRCode | None:
        result = await self.db.execute(
            select(OrganizationQRCode).where(
                OrganizationQRCode.organization_id == organization_id,
                OrganizationQRCode.kind == kind,
                OrganizationQRCode.active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _deactivate_current(self, organization_id: str, kind: str) -> None:
        await self.db.execute(
            update(OrganizationQRCode)
            .where(
                OrganizationQRCode.organization_id == organization_id,
                OrganizationQRCode.kind == kind,
                OrganizationQRCode.active.is_(True),
            )
            .values(active=False, deactivated_at=self.clock())
        )

    async def issue(
        self,
        organization_id: str,
        kind: str,
        validity_minutes: int | None = None,
    ) -> OrganizationQRCode:
        """Issue a new current code for (organization, kind).

        Any code that is still current for the pair is deactivated first so
        there is never more than one current code per kind.
        """
        now = self.clock()
        await self._deactivate_current(organization_id, kind)

        qr = OrganizationQRCode(
            organization_id=organization_id,
            kind=kind,
            code=generate_code(),
            issued_at=now,
            expires_at=now + timedelta(minutes=validity_minutes) if validity_minutes else None,
            validity_minutes=validity_minutes,
            usage_count=0,
            active=True,
        )
        self.db.add(qr)
        await self.db.flush()
        self._invalidate(organization_id)
        logger.info(
            "Issued %s QR code %d for organization %s (validity=%s)",
            kind,
            qr.id,
            organization_id,
            f"{validity_minutes}m" if validity_minutes else "permanent",
        )
        return qr

    async def resolve(self, code: str) -> OrganizationQRCode | None:
        result = await self.db.execute(
            select(OrganizationQRCode).where(OrganizationQRCode.code == code.strip())
        )
        return result.scalar_one_or_none()

    async def record_usage(self, qr: OrganizationQRCode) -> None:
        """Atomically bump the usage counter in SQL, not read-modify-write."""
        await self.db.execute(
            update(OrganizationQRCode)
            .where(OrganizationQRCode.id == qr.id)
            .values(usage_count=OrganizationQRCode.usage_count + 1)
        )
        self._invalidate(qr.organization_id)

    async def regenerate(
        self,
        organization_id: str,
        kind: str,
        validity_minutes: int | None = None,
    ) -> tuple[OrganizationQRCode | None, OrganizationQRCode]:
        """Deactivate the current code of *kind* and issue a replacement.

        The replacement keeps the old code's validity window unless a new
        one is given.
        """
        previous = await self.current(organization_id, kind)
        if validity_minutes is None and previous is not None:
            validity_minutes = previous.validity_minutes
        new = await self.issue(organization_id, kind, validity_minutes)
        if previous is not None:
            logger.info(
                "Rotated %s QR code for organization %s: %d -> %d (old usage %d)",
                kind,
                organization_id,
                previous.id,
                new.id,
                previous.usage_count,
            )
        return previous, new

    async def rotate_expired(self, organization_id: str) -> list[OrganizationQRCode]:
        now = self.clock()
        result = await self.db.execute(
            select(OrganizationQRCode).where(
                OrganizationQRCode.organization_id == organization_id,
                OrganizationQRCode.active.is_(True),
                OrganizationQRCode.expires_at.is_not(None),
            )
        )
        rotated = []
        for qr in result.scalars().all():
            if validate(qr, now) is QRCodeState.EXPIRED:
                _, new = await self.regenerate(organization_id, qr.kind, qr.validity_minutes)
                rotated.append(new)
        return rotated

    async def list_active(self, organization_id: str) -> list[OrganizationQRCode]:
        result = await self.db.execute(
            select(OrganizationQRCode)
            .where(
                OrganizationQRCode.organization_id == organization_id,
                OrganizationQRCode.active.is_(True),
            )
            .order_by(OrganizationQRCode.kind)
        )
        return list(result.scalars().all())

    async def history(self, organization_id: str, kind: str | None = None) -> list[OrganizationQRCode]:
        stmt = (
            select(OrganizationQRCode)
            .where(
                OrganizationQRCode.organization_id == organization_id,
                OrganizationQRCode.active.is_(False),
            )
            .order_by(OrganizationQRCode.issued_at.desc())
        )
        if kind:
            stmt = stmt.where(OrganizationQRCode.kind == kind)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
