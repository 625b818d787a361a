"""
Settings endpoints — organization settings and per-user working policy.

Organization settings are a per-organization singleton: GET creates the
row with defaults on first read, PUT updates it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.api.v1.deps import get_cache, get_clock, get_db, require_admin
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock
from qrtrack.core.security import Identity
from qrtrack.models.organization import OrganizationSettings
from qrtrack.models.policy import WEEKDAY_COLUMNS, CustomHoliday
from qrtrack.schemas.attendance import DeleteResponse
from qrtrack.schemas.settings import (HolidayCreate, HolidayRead,
                                      OrganizationSettingsRead,
                                      OrganizationSettingsUpdate, PolicyRead,
                                      PolicyUpdate)
from qrtrack.services.policy import PolicyService

router = APIRouter(tags=["settings"])
logger = logging.getLogger(__name__)


# ── Organization ────────────────────────────────────────────────────
@router.get("/organizations/settings", response_model=OrganizationSettingsRead)
async def get_organization_settings(
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
) -> OrganizationSettings:
    """Get the organization's location, timezone and day thresholds."""
    row = await PolicyService(db).get_or_create_settings(admin.organization_id)
    await db.commit()
    return row


@router.put("/organizations/settings", response_model=OrganizationSettingsRead)
async def update_organization_settings(
    body: OrganizationSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> OrganizationSettings:
    """Update location, radius, timezone, working hours or thresholds."""
    row = await PolicyService(db, clock=clock, cache=cache).update_settings(
        admin.organization_id, body.model_dump(exclude_unset=True)
    )
    await db.commit()
    await db.refresh(row)
    return row


# ── Working policy ──────────────────────────────────────────────────
async def _policy_read(service: PolicyService, user_id: str, organization_id: str) -> PolicyRead:
    policy = await service.working_policy(user_id, organization_id)
    holidays = await service.list_holidays(user_id, organization_id)
    return PolicyRead(
        user_id=user_id,
        work_start=policy.work_start.strftime("%H:%M"),
        work_end=policy.work_end.strftime("%H:%M"),
        timezone=policy.timezone,
        weekly_schedule=dict(zip(WEEKDAY_COLUMNS, policy.weekly_schedule)),
        holidays=[HolidayRead.model_validate(h) for h in holidays],
    )


@router.get("/policies/{user_id}", response_model=PolicyRead)
async def get_policy(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> PolicyRead:
    """The user's effective policy, organization defaults included."""
    return await _policy_read(PolicyService(db, clock=clock, cache=cache), user_id, admin.organization_id)


@router.put("/policies/{user_id}", response_model=PolicyRead)
async def update_policy(
    user_id: str,
    body: PolicyUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> PolicyRead:
    service = PolicyService(db, clock=clock, cache=cache)
    await service.upsert_policy(user_id, admin.organization_id, body.model_dump(exclude_unset=True))
    await db.commit()
    return await _policy_read(service, user_id, admin.organization_id)


@router.post("/policies/{user_id}/holidays", response_model=HolidayRead, status_code=201)
async def add_holiday(
    user_id: str,
    body: HolidayCreate,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> CustomHoliday:
    holiday = await PolicyService(db, clock=clock, cache=cache).add_holiday(
        user_id, admin.organization_id, body.date, body.reason, body.recurrence
    )
    await db.commit()
    logger.info("Holiday %s (%s) added for user %s", body.date, body.recurrence, user_id)
    return holiday


@router.delete("/policies/{user_id}/holidays/{holiday_id}", response_model=DeleteResponse)
async def delete_holiday(
    user_id: str,
    holiday_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> DeleteResponse:
    await PolicyService(db, clock=clock, cache=cache).delete_holiday(
        user_id, admin.organization_id, holiday_id
    )
    await db.commit()
    return DeleteResponse(success=True, message="Holiday removed")
