"""
Session ledger — the per-user, per-day record of check-in/check-out sessions.

Every mutation bumps ``DayLedger.version`` so the flush is a
compare-and-swap against the version that was read; callers additionally
hold ``KeyedLocks.hold(ledger_key(user, date))`` while they mutate and
commit. Nothing here commits.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock, utc_now
from qrtrack.models.ledger import AttendanceSession, DayLedger
from qrtrack.services.day_state import (closing_duration, day_state,
                                        ensure_can_check_in,
                                        ensure_can_check_out,
                                        opening_time)
from qrtrack.services.geo import GeoPoint
from qrtrack.services.working_time import (DayStatus, WorkingPolicy,
                                           compute_status)

logger = logging.getLogger(__name__)


def day_cache_prefix(organization_id: str, user_id: str | None = None) -> str:
    if user_id is None:
        return f"day:{organization_id}:"
    return f"day:{organization_id}:{user_id}:"


def day_cache_key(organization_id: str, user_id: str, day: str) -> str:
    return f"{day_cache_prefix(organization_id, user_id)}{day}"


class SessionLedger:
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

    def _touch(self, ledger: DayLedger) -> None:
        state = inspect(ledger)
        # One bump per flush; the UPDATE is conditional on the loaded version.
        if state.persistent and not state.attrs.version.history.has_changes():
            ledger.version = ledger.version + 1
        ledger.updated_at = self.clock()
        if self.cache is not None:
            self.cache.invalidate_on_commit(self.db, day_cache_prefix(ledger.organization_id, ledger.user_id))

    # ── Lookup ──────────────────────────────────────────────────────
    async def find_day(self, user_id: str, day: date | str) -> DayLedger | None:
        result = await self.db.execute(
            select(DayLedger).where(
                DayLedger.user_id == user_id,
                DayLedger.date == str(day),
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create_day(self, user_id: str, organization_id: str, day: date | str) -> DayLedger:
        """Return the ledger for (user, day), creating an empty one on first use.

        A concurrent creator surfaces as an ``IntegrityError`` on the unique
        (user_id, date) key at flush time; the scan pipeline retries.
        """
        ledger = await self.find_day(user_id, day)
        if ledger is not None:
            return ledger
        ledger = DayLedger(
            user_id=user_id,
            organization_id=organization_id,
            date=str(day),
            total_working_minutes=0,
            status="absent",
            is_late=False,
            finalized=False,
            needs_review=False,
            version=1,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        ledger.sessions = []
        self.db.add(ledger)
        logger.debug("Created day ledger for user %s on %s", user_id, day)
        return ledger

    # ── Transitions ─────────────────────────────────────────────────
    def apply_check_in(
        self,
        ledger: DayLedger,
        timestamp: datetime,
        geo: GeoPoint,
        *,
        qr_code_id: int | None = None,
        device_id: str | None = None,
        verified: bool = True,
    ) -> AttendanceSession:
        state = day_state(ledger.sessions)
        ensure_can_check_in(state)
        timestamp, anomaly = opening_time(state, timestamp)
        if anomaly:
            logger.warning(
                "Check-in for user %s on %s precedes the last check-out; starting it there",
                ledger.user_id,
                ledger.date,
            )

        session = AttendanceSession(
            check_in_at=timestamp,
            check_in_latitude=geo.latitude,
            check_in_longitude=geo.longitude,
            check_in_accuracy=geo.accuracy,
            check_in_verified=verified,
            check_in_qr_code_id=qr_code_id,
            duration_minutes=0,
            clock_anomaly=anomaly,
            device_id=device_id,
        )
        ledger.sessions.append(session)
        self._touch(ledger)
        return session

    def apply_check_out(
        self,
        ledger: DayLedger,
        timestamp: datetime,
        geo: GeoPoint,
        *,
        qr_code_id: int | None = None,
        verified: bool = True,
    ) -> AttendanceSession:
        session = ensure_can_check_out(day_state(ledger.sessions))

        minutes, anomaly = closing_duration(session.check_in_at, timestamp)
        session.check_out_at = timestamp
        session.check_out_latitude = geo.latitude
        session.check_out_longitude = geo.longitude
        session.check_out_accuracy = geo.accuracy
        session.check_out_verified = verified
        session.check_out_qr_code_id = qr_code_id
        session.duration_minutes = minutes
        session.clock_anomaly = anomaly
        if anomaly:
            logger.warning(
                "ClockAnomaly: check-out %s precedes check-in %s for user %s on %s",
                timestamp.isoformat(),
                session.check_in_at.isoformat(),
                ledger.user_id,
                ledger.date,
            )
        self._touch(ledger)
        return session  # type: ignore[return-value]

    def refresh_totals(self, ledger: DayLedger, policy: WorkingPolicy, now: datetime) -> DayStatus:
        """Recompute and store the day's totals; returns the computed status."""
        status = compute_status(ledger, policy, now)
        ledger.total_working_minutes = status.total_minutes
        ledger.status = status.status
        ledger.is_late = status.is_late
        self._touch(ledger)
        return status

    # ── Administrative writes ───────────────────────────────────────
    def set_override(
        self,
        ledger: DayLedger,
        status: str,
        notes: str | None,
        admin_id: str,
    ) -> None:
        ledger.override_status = status
        ledger.override_notes = notes
        ledger.override_by = admin_id
        ledger.status = status
        self._touch(ledger)
        logger.info(
            "Day status for user %s on %s overridden to %s by %s",
            ledger.user_id,
            ledger.date,
            status,
            admin_id,
        )

    def finalize(self, ledger: DayLedger, policy: WorkingPolicy) -> DayStatus:
        """Freeze totals as of the close of the day's working window."""
        closes_at = policy.window_close(date.fromisoformat(ledger.date))
        status = self.refresh_totals(ledger, policy, closes_at)
        ledger.finalized = True
        return status

    def flag_for_review(self, ledger: DayLedger, note: str) -> None:
        ledger.needs_review = True
        ledger.review_note = note[:500]
        self._touch(ledger)
        logger.error("Day ledger %s (user %s, %s) flagged for review: %s",
                     ledger.id, ledger.user_id, ledger.date, note)

    def clear_review(self, ledger: DayLedger) -> None:
        ledger.needs_review = False
        ledger.review_note = None
        self._touch(ledger)

    # ── Queries ─────────────────────────────────────────────────────
    async def history(self, user_id: str, days: int, today: date) -> list[DayLedger]:
        since = today - timedelta(days=days - 1)
        result = await self.db.execute(
            select(DayLedger)
            .where(
                DayLedger.user_id == user_id,
                DayLedger.date >= since.isoformat(),
                DayLedger.date <= today.isoformat(),
            )
            .order_by(DayLedger.date.desc())
        )
        return list(result.scalars().all())

    async def list_for_date(self, organization_id: str, day: date | str) -> list[DayLedger]:
        result = await self.db.execute(
            select(DayLedger)
            .where(
                DayLedger.organization_id == organization_id,
                DayLedger.date == str(day),
            )
            .order_by(DayLedger.user_id)
        )
        return list(result.scalars().all())

    async def list_needing_review(self, organization_id: str) -> list[DayLedger]:
        result = await self.db.execute(
            select(DayLedger)
            .where(
                DayLedger.organization_id == organization_id,
                DayLedger.needs_review.is_(True),
            )
            .order_by(DayLedger.date.desc())
        )
        return list(result.scalars().all())

    async def get(self, ledger_id: int, organization_id: str) -> DayLedger | None:
        result = await self.db.execute(
            select(DayLedger).where(
                DayLedger.id == ledger_id,
                DayLedger.organization_id == organization_id,
            )
        )
        return result.scalar_one_or_none()
