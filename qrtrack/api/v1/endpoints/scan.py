"""
Scan endpoint — the primary entry point for members' QR scans.

Every outcome is a ``ScanResponse`` body; the HTTP status mirrors the
rejection reason so clients can branch on either.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.api.v1.deps import (get_cache, get_clock, get_db, get_locks,
                                 require_member)
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock
from qrtrack.core.config import settings
from qrtrack.core.locks import KeyedLocks
from qrtrack.core.security import Identity
from qrtrack.schemas.attendance import DayStatusRead, SessionRead
from qrtrack.schemas.scan import ScanRequest, ScanResponse
from qrtrack.services.device_guard import DeviceInfo
from qrtrack.services.geo import GeoPoint
from qrtrack.services.scan_validator import (ScanCommand, ScanResult,
                                             ScanValidator)

# Rate limiter keyed by client IP
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

router = APIRouter(tags=["scan"])
logger = logging.getLogger(__name__)


def _to_response(result: ScanResult) -> ScanResponse:
    if not result.accepted:
        error = result.error
        return ScanResponse(
            accepted=False,
            success=False,
            reason=error.code,
            message=error.message,
            next_step=error.next_step,
            retryable=error.retryable,
            details=error.details,
        )
    return ScanResponse(
        accepted=True,
        success=True,
        scan_type=result.scan_type,
        message="Checked in" if result.scan_type == "check-in" else "Checked out",
        date=result.date,
        device_bound=result.device_bound,
        session=SessionRead.model_validate(result.session),
        day_status=DayStatusRead.model_validate(result.day_status),
    )


@router.post("/scan", response_model=ScanResponse)
@limiter.limit(settings.SCAN_RATE_LIMIT)
async def scan(
    request: Request,
    body: ScanRequest,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_member),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> JSONResponse:
    """Validate a QR scan and fold it into today's ledger."""
    validator = ScanValidator(db, locks=locks, clock=clock, cache=cache)
    result = await validator.scan(
        ScanCommand(
            code=body.code,
            user_id=identity.user_id,
            organization_id=identity.organization_id,
            geo=GeoPoint(body.geo.latitude, body.geo.longitude, body.geo.accuracy),
            device=DeviceInfo(
                device_id=body.device.id,
                device_type=body.device.type,
                fingerprint=body.device.fingerprint,
            ),
            timestamp=body.timestamp,
            is_mock=body.geo.is_mock,
        )
    )
    status_code = 200 if result.accepted else result.error.status_code  # type: ignore[union-attr]
    return JSONResponse(
        status_code=status_code,
        content=_to_response(result).model_dump(mode="json"),
    )
