"""
Device binding endpoints — the caller's binding, change requests and the
admin resolution / reset actions.

All mutations run under the per-user device lock.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.api.v1.deps import (get_cache, get_clock, get_db, get_locks,
                                 require_admin, require_member)
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock
from qrtrack.core.locks import KeyedLocks, device_key
from qrtrack.core.security import Identity
from qrtrack.models.device import DeviceChangeRequest
from qrtrack.schemas.device import (ChangeRequestCreate, ChangeRequestRead,
                                    DeviceBindingRead, DeviceResetResponse,
                                    DeviceStatusResponse, ResolveRequest)
from qrtrack.services.device_guard import (DeviceBindingGuard, DeviceInfo,
                                           device_cache_prefix)

router = APIRouter(prefix="/devices", tags=["devices"])
logger = logging.getLogger(__name__)


@router.get("/me", response_model=DeviceStatusResponse)
async def my_device(
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_member),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> DeviceStatusResponse:
    key = device_cache_prefix(identity.user_id) + "status"
    cached = cache.get(key)
    if cached is not None:
        return cached

    guard = DeviceBindingGuard(db, clock=clock, cache=cache)
    binding = await guard.get_binding(identity.user_id)
    latest = await guard.latest_request(identity.user_id)
    result = DeviceStatusResponse(
        binding=DeviceBindingRead.model_validate(binding) if binding else None,
        latest_request=ChangeRequestRead.model_validate(latest) if latest else None,
    )
    cache.set(key, result)
    return result


@router.post("/change-requests", response_model=ChangeRequestRead, status_code=201)
async def file_change_request(
    body: ChangeRequestCreate,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_member),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> DeviceChangeRequest:
    """Ask an administrator to move the binding to a new device."""
    guard = DeviceBindingGuard(db, clock=clock, cache=cache)
    async with locks.hold(device_key(identity.user_id)):
        request = await guard.file_change_request(
            identity.user_id,
            identity.organization_id,
            DeviceInfo(
                device_id=body.device.id,
                device_type=body.device.type,
                fingerprint=body.device.fingerprint,
            ),
            reason=body.reason,
        )
        await db.commit()
    return request


@router.get("/change-requests", response_model=list[ChangeRequestRead])
async def list_change_requests(
    status: Optional[Literal["pending", "approved", "rejected"]] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
) -> list[DeviceChangeRequest]:
    return await DeviceBindingGuard(db).list_requests(admin.organization_id, status)


@router.post("/change-requests/{request_id}/resolve", response_model=ChangeRequestRead)
async def resolve_change_request(
    request_id: int,
    body: ResolveRequest,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> DeviceChangeRequest:
    """Approve (rebinds the device) or reject a pending request."""
    guard = DeviceBindingGuard(db, clock=clock, cache=cache)
    request = await guard.get_request(request_id, admin.organization_id)
    async with locks.hold(device_key(request.user_id)):
        # Re-read under the lock so a concurrent resolution is seen.
        await db.refresh(request)
        await guard.resolve_change_request(request, body.decision, body.admin_reason, admin.user_id)
        await db.commit()
    return request


@router.post("/{user_id}/reset", response_model=DeviceResetResponse)
async def reset_device(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> DeviceResetResponse:
    """Clear the binding; the user's next accepted scan binds a new device."""
    guard = DeviceBindingGuard(db, clock=clock, cache=cache)
    async with locks.hold(device_key(user_id)):
        removed = await guard.reset_binding(user_id, admin.organization_id)
        await db.commit()
    return DeviceResetResponse(user_id=user_id, removed=removed)
