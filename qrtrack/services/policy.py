"""
Organization settings and per-user working policy lookup.

Rows are turned into frozen values (``OrgProfile``, ``WorkingPolicy``) before
they leave this module so they can be cached across requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock, utc_now
from qrtrack.core.config import settings
from qrtrack.core.exceptions import NotFound
from qrtrack.models.organization import OrganizationSettings
from qrtrack.models.policy import WEEKDAY_COLUMNS, CustomHoliday
from qrtrack.models.policy import WorkingPolicy as PolicyRow
from qrtrack.services.geo import GeoPoint
from qrtrack.services.working_time import (DEFAULT_WEEKLY_SCHEDULE, Holiday,
                                           WorkingPolicy, parse_hhmm)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrgProfile:
    organization_id: str
    name: str | None
    latitude: float | None
    longitude: float | None
    radius_m: float
    timezone: str
    work_start: str
    work_end: str
    full_day_minutes: int
    half_day_minutes: int
    grace_minutes: int

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def location(self) -> GeoPoint | None:
        if not self.has_location:
            return None
        return GeoPoint(self.latitude, self.longitude, accuracy=self.radius_m)  # type: ignore[arg-type]

    @classmethod
    def from_row(cls, row: OrganizationSettings) -> "OrgProfile":
        return cls(
            organization_id=row.organization_id,
            name=row.name,
            latitude=row.latitude,
            longitude=row.longitude,
            radius_m=row.radius_m,
            timezone=row.timezone,
            work_start=row.work_start,
            work_end=row.work_end,
            full_day_minutes=row.full_day_minutes,
            half_day_minutes=row.half_day_minutes,
            grace_minutes=row.grace_minutes,
        )


def org_cache_key(organization_id: str) -> str:
    return f"org:{organization_id}:profile"


def policy_cache_prefix(organization_id: str, user_id: str | None = None) -> str:
    if user_id is None:
        return f"policy:{organization_id}:"
    return f"policy:{organization_id}:{user_id}:"


def local_date(moment: datetime, profile: OrgProfile) -> date:
    """The organization-local calendar day *moment* falls on."""
    return moment.astimezone(WorkingPolicy(timezone=profile.timezone).tz).date()


class PolicyService:
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

    # ── Organization settings ───────────────────────────────────────
    async def get_or_create_settings(self, organization_id: str) -> OrganizationSettings:
        """Fetch the settings row, creating it with defaults if it doesn't exist."""
        result = await self.db.execute(
            select(OrganizationSettings).where(
                OrganizationSettings.organization_id == organization_id
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = OrganizationSettings(
                organization_id=organization_id,
                radius_m=500.0,
                timezone=settings.DEFAULT_TIMEZONE,
                work_start=settings.DEFAULT_WORK_START,
                work_end=settings.DEFAULT_WORK_END,
                full_day_minutes=settings.FULL_DAY_MINUTES,
                half_day_minutes=settings.HALF_DAY_MINUTES,
                grace_minutes=settings.LATE_GRACE_MINUTES,
            )
            self.db.add(row)
            await self.db.flush()
            logger.info("Created default settings for organization %s", organization_id)
        return row

    async def find_profile(self, organization_id: str) -> OrgProfile | None:
        """Read-only lookup; never creates the settings row."""
        key = org_cache_key(organization_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        result = await self.db.execute(
            select(OrganizationSettings).where(
                OrganizationSettings.organization_id == organization_id
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        profile = OrgProfile.from_row(row)
        if self.cache is not None:
            self.cache.set(key, profile)
        return profile

    async def profile(self, organization_id: str) -> OrgProfile:
        """Like ``find_profile``, but falls back to the configured defaults."""
        profile = await self.find_profile(organization_id)
        if profile is not None:
            return profile
        return OrgProfile(
            organization_id=organization_id,
            name=None,
            latitude=None,
            longitude=None,
            radius_m=500.0,
            timezone=settings.DEFAULT_TIMEZONE,
            work_start=settings.DEFAULT_WORK_START,
            work_end=settings.DEFAULT_WORK_END,
            full_day_minutes=settings.FULL_DAY_MINUTES,
            half_day_minutes=settings.HALF_DAY_MINUTES,
            grace_minutes=settings.LATE_GRACE_MINUTES,
        )

    async def update_settings(self, organization_id: str, changes: dict) -> OrganizationSettings:
        row = await self.get_or_create_settings(organization_id)
        for field, value in changes.items():
            setattr(row, field, value)
        row.updated_at = self.clock()
        self.invalidate_organization(organization_id)
        logger.info("Organization %s settings updated: %s", organization_id, sorted(changes))
        return row

    def invalidate_organization(self, organization_id: str) -> None:
        if self.cache is None:
            return
        self.cache.invalidate_on_commit(self.db, f"org:{organization_id}:")
        self.cache.invalidate_on_commit(self.db, policy_cache_prefix(organization_id))
        self.cache.invalidate_on_commit(self.db, f"day:{organization_id}:")

    def invalidate_user(self, organization_id: str, user_id: str) -> None:
        if self.cache is None:
            return
        self.cache.invalidate_on_commit(self.db, policy_cache_prefix(organization_id, user_id))
        self.cache.invalidate_on_commit(self.db, f"day:{organization_id}:{user_id}:")

    # ── Per-user policy ─────────────────────────────────────────────
    async def get_row(self, user_id: str, organization_id: str) -> PolicyRow | None:
        result = await self.db.execute(
            select(PolicyRow).where(
                PolicyRow.user_id == user_id,
                PolicyRow.organization_id == organization_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_holidays(self, user_id: str, organization_id: str) -> list[CustomHoliday]:
        result = await self.db.execute(
            select(CustomHoliday)
            .where(
                CustomHoliday.user_id == user_id,
                CustomHoliday.organization_id == organization_id,
            )
            .order_by(CustomHoliday.date)
        )
        return list(result.scalars().all())

    async def working_policy(self, user_id: str, organization_id: str) -> WorkingPolicy:
        """The user's effective policy; organization defaults fill every gap."""
        key = policy_cache_prefix(organization_id, user_id) + "effective"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        org = await self.profile(organization_id)
        row = await self.get_row(user_id, organization_id)
        holidays = tuple(
            Holiday(day=date.fromisoformat(h.date), recurrence=h.recurrence, reason=h.reason)
            for h in await self.list_holidays(user_id, organization_id)
        )

        policy = WorkingPolicy(
            work_start=parse_hhmm(row.work_start if row else org.work_start),
            work_end=parse_hhmm(row.work_end if row else org.work_end),
            timezone=(row.timezone if row and row.timezone else org.timezone),
            weekly_schedule=row.weekly_schedule if row else DEFAULT_WEEKLY_SCHEDULE,
            holidays=holidays,
            full_day_minutes=org.full_day_minutes,
            half_day_minutes=org.half_day_minutes,
            grace_minutes=org.grace_minutes,
        )
        if self.cache is not None:
            self.cache.set(key, policy)
        return policy

    async def upsert_policy(self, user_id: str, organization_id: str, changes: dict) -> PolicyRow:
        row = await self.get_row(user_id, organization_id)
        if row is None:
            org = await self.profile(organization_id)
            row = PolicyRow(
                user_id=user_id,
                organization_id=organization_id,
                work_start=org.work_start,
                work_end=org.work_end,
            )
            for day, working in zip(WEEKDAY_COLUMNS, DEFAULT_WEEKLY_SCHEDULE):
                setattr(row, day, working)
            self.db.add(row)

        for field, value in changes.items():
            setattr(row, field, value)
        row.updated_at = self.clock()
        await self.db.flush()
        self.invalidate_user(organization_id, user_id)
        logger.info("Working policy for user %s updated: %s", user_id, sorted(changes))
        return row

    async def add_holiday(
        self,
        user_id: str,
        organization_id: str,
        day: date,
        reason: str,
        recurrence: str = "none",
    ) -> CustomHoliday:
        holiday = CustomHoliday(
            user_id=user_id,
            organization_id=organization_id,
            date=day.isoformat(),
            reason=reason,
            recurrence=recurrence,
        )
        self.db.add(holiday)
        await self.db.flush()
        self.invalidate_user(organization_id, user_id)
        return holiday

    async def delete_holiday(self, user_id: str, organization_id: str, holiday_id: int) -> None:
        result = await self.db.execute(
            delete(CustomHoliday).where(
                CustomHoliday.id == holiday_id,
                CustomHoliday.user_id == user_id,
                CustomHoliday.organization_id == organization_id,
            )
        )
        if not result.rowcount:
            raise NotFound("Holiday not found")
        self.invalidate_user(organization_id, user_id)
