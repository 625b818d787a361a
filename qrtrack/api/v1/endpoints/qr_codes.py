"""
QR code endpoints — issue, regenerate, list and rotate an organization's codes.

Listing is open to kiosk displays as well as admins; everything that
changes a code is admin-only.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.api.v1.deps import (get_cache, get_clock, get_current_identity,
                                 get_db, require_admin)
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock
from qrtrack.core.config import settings
from qrtrack.core.security import Identity
from qrtrack.models.qr_code import QR_KINDS, OrganizationQRCode
from qrtrack.schemas.qr_code import (QRCodeIssue, QRCodeRead,
                                     QRCodeRegenerate, QRCodeRegenerated,
                                     QRCodeRotation, QRKind)
from qrtrack.services.qr_registry import QRCodeRegistry, qr_cache_prefix

router = APIRouter(prefix="/qr-codes", tags=["qr-codes"])
logger = logging.getLogger(__name__)


@router.post("", response_model=QRCodeRead, status_code=201)
async def issue_code(
    body: QRCodeIssue,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> OrganizationQRCode:
    """Issue a new current code of *kind*; any previous one is deactivated."""
    registry = QRCodeRegistry(db, clock=clock, cache=cache)
    qr = await registry.issue(
        admin.organization_id,
        body.kind,
        body.validity_minutes or settings.QR_DEFAULT_VALIDITY_MINUTES,
    )
    await db.commit()
    return qr


@router.get("", response_model=list[QRCodeRead])
async def list_codes(
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> list[QRCodeRead]:
    """The organization's current codes with their usage counts."""
    if identity.role not in ("admin", "kiosk"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins and kiosk displays can list QR codes",
        )
    key = qr_cache_prefix(identity.organization_id) + "active"
    cached = cache.get(key)
    if cached is not None:
        return cached

    codes = await QRCodeRegistry(db, clock=clock, cache=cache).list_active(identity.organization_id)
    result = [QRCodeRead.model_validate(qr) for qr in codes]
    cache.set(key, result)
    return result


@router.get("/history", response_model=list[QRCodeRead])
async def code_history(
    kind: Optional[QRKind] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
) -> list[OrganizationQRCode]:
    """Deactivated codes, newest first."""
    return await QRCodeRegistry(db).history(admin.organization_id, kind)


@router.post("/rotate-expired", response_model=QRCodeRotation)
async def rotate_expired(
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> QRCodeRotation:
    """Replace every current code whose expiry has passed, keeping its validity window."""
    rotated = await QRCodeRegistry(db, clock=clock, cache=cache).rotate_expired(
        admin.organization_id
    )
    await db.commit()
    if rotated:
        logger.info("Rotated %d expired QR codes for %s", len(rotated), admin.organization_id)
    return QRCodeRotation(rotated=[QRCodeRead.model_validate(qr) for qr in rotated])


@router.post("/{kind}/regenerate", response_model=QRCodeRegenerated)
async def regenerate_code(
    kind: str = Path(..., pattern="^(" + "|".join(QR_KINDS) + ")$"),
    body: Optional[QRCodeRegenerate] = None,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> QRCodeRegenerated:
    registry = QRCodeRegistry(db, clock=clock, cache=cache)
    previous, current = await registry.regenerate(
        admin.organization_id,
        kind,
        body.validity_minutes if body else None,
    )
    await db.commit()
    return QRCodeRegenerated(
        previous=QRCodeRead.model_validate(previous) if previous else None,
        current=QRCodeRead.model_validate(current),
    )
