"""
Scan validator — the ordered, short-circuiting scan pipeline.

Steps run in a fixed order and stop at the first failure:

1. resolve the code (``CodeNotFound``)
2. check activity / expiry (``CodeExpired``)
3. check the device binding (``DeviceNotAuthorized``)
4. check the fix accuracy and the geofence (``OutOfRange``)
5. decide check-in vs check-out
6. check the transition against the day's state
7. commit: usage count, device auto-bind, ledger transition, totals

Nothing is written before step 7 and step 7 is a single commit, so a scan
that fails for any reason (including a storage timeout) can be retried.
Every outcome comes back as a ``ScanResult``; no storage exception escapes
untyped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock, ensure_utc, utc_now
from qrtrack.core.config import settings
from qrtrack.core.exceptions import (AttendanceError, CodeExpired,
                                     CodeNotFound, ConcurrentUpdate,
                                     DayFinalized, DeviceNotAuthorized,
                                     InvalidTimestamp, LedgerInvariantError,
                                     LedgerNeedsReview, LocationNotConfigured,
                                     MockLocation, OutOfRange, StorageTimeout,
                                     StorageUnavailable)
from qrtrack.core.locks import KeyedLocks, device_key, ledger_key
from qrtrack.models.ledger import AttendanceSession, DayLedger
from qrtrack.services.day_state import (CHECK_IN, day_state, ensure_transition,
                                        infer_scan_type)
from qrtrack.services.device_guard import (BindingCheck, DeviceBindingGuard,
                                           DeviceInfo)
from qrtrack.services.geo import GeoPoint, allowed_distance, distance
from qrtrack.services.policy import PolicyService, local_date
from qrtrack.services.qr_registry import QRCodeRegistry, QRCodeState, validate
from qrtrack.services.session_ledger import SessionLedger
from qrtrack.services.working_time import DayStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanCommand:
    code: str
    user_id: str
    organization_id: str
    geo: GeoPoint
    device: DeviceInfo
    timestamp: datetime | None = None
    is_mock: bool = False


@dataclass
class ScanResult:
    accepted: bool
    scan_type: str | None = None
    error: AttendanceError | None = None
    session: AttendanceSession | None = None
    day_status: DayStatus | None = None
    date: str | None = None
    device_bound: bool = False

    @property
    def reason(self) -> str | None:
        return self.error.code if self.error else None

    @classmethod
    def rejected(cls, error: AttendanceError) -> "ScanResult":
        return cls(accepted=False, error=error)


class ScanValidator:
    def __init__(
        self,
        db: AsyncSession,
        *,
        locks: KeyedLocks,
        clock: Clock = utc_now,
        cache: TTLCache | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        max_clock_skew: float | None = None,
        default_accuracy: float | None = None,
        fixed_margin: float | None = None,
        max_accuracy: float | None = None,
    ) -> None:
        self.db = db
        self.locks = locks
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.STORAGE_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.SCAN_MAX_RETRIES
        self.max_clock_skew = (
            max_clock_skew if max_clock_skew is not None else settings.SCAN_MAX_CLOCK_SKEW_SECONDS
        )
        self.default_accuracy = (
            default_accuracy if default_accuracy is not None else settings.GEO_DEFAULT_ACCURACY_METERS
        )
        self.fixed_margin = fixed_margin if fixed_margin is not None else settings.GEO_FIXED_MARGIN_METERS
        self.max_accuracy = max_accuracy if max_accuracy is not None else settings.GEO_MAX_ACCURACY_METERS

        self.registry = QRCodeRegistry(db, clock=clock, cache=cache)
        self.guard = DeviceBindingGuard(db, clock=clock, cache=cache)
        self.ledgers = SessionLedger(db, clock=clock, cache=cache)
        self.policies = PolicyService(db, clock=clock, cache=cache)

    # ── Entry point ─────────────────────────────────────────────────
    async def scan(self, cmd: ScanCommand) -> ScanResult:
        now = self.clock()
        try:
            timestamp = self._scan_time(cmd.timestamp, now)
        except AttendanceError as exc:
            return self._reject(cmd, exc)

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(self._attempt(cmd, timestamp, now), self.timeout)
            except AttendanceError as exc:
                await self._rollback()
                return self._reject(cmd, exc)
            except asyncio.TimeoutError:
                await self._rollback()
                logger.warning(
                    "Scan by user %s timed out after %.1fs (attempt %d)",
                    cmd.user_id,
                    self.timeout,
                    attempt,
                )
                return self._reject(cmd, StorageTimeout())
            except (StaleDataError, IntegrityError) as exc:
                await self._rollback()
                logger.warning(
                    "Concurrent write on day ledger for user %s (attempt %d/%d): %s",
                    cmd.user_id,
                    attempt,
                    self.max_retries,
                    exc.__class__.__name__,
                )
            except SQLAlchemyError as exc:
                await self._rollback()
                logger.warning("Storage error during scan by user %s: %s", cmd.user_id, exc)
                return self._reject(cmd, StorageUnavailable())

        return self._reject(cmd, ConcurrentUpdate())

    # ── Pipeline ────────────────────────────────────────────────────
    def _scan_time(self, timestamp: datetime | None, now: datetime) -> datetime:
        if timestamp is None:
            return now
        timestamp = ensure_utc(timestamp)
        if abs((timestamp - now).total_seconds()) > self.max_clock_skew:
            raise InvalidTimestamp(
                details={"server_time": now.isoformat(), "timestamp": timestamp.isoformat()}
            )
        return timestamp

    async def _attempt(self, cmd: ScanCommand, timestamp: datetime, now: datetime) -> ScanResult:
        org = await self.policies.profile(cmd.organization_id)
        day = local_date(timestamp, org).isoformat()

        # Device lock first, then the day ledger; nothing else nests them.
        async with self.locks.hold(device_key(cmd.user_id)), self.locks.hold(
            ledger_key(cmd.user_id, day)
        ):
            # 1. Resolve
            qr = await self.registry.resolve(cmd.code)
            if qr is None or qr.organization_id != cmd.organization_id:
                raise CodeNotFound()

            # 2. Activity / expiry
            state = validate(qr, now)
            if state is QRCodeState.INACTIVE:
                raise CodeExpired("QR code has been replaced")
            if state is QRCodeState.EXPIRED:
                raise CodeExpired()

            # 3. Device
            binding = await self.guard.check_binding(cmd.user_id, cmd.device)
            if binding is BindingCheck.MISMATCH:
                raise DeviceNotAuthorized()

            # 4. Geofence
            if org.location is None:
                raise LocationNotConfigured()
            if cmd.is_mock:
                raise MockLocation()
            if cmd.geo.accuracy is not None and cmd.geo.accuracy > self.max_accuracy:
                raise OutOfRange(
                    f"Location accuracy too low ({cmd.geo.accuracy:.0f} m, at most {self.max_accuracy:.0f} m)",
                    next_step="Wait for a better GPS fix and scan again",
                    details={"accuracy_m": cmd.geo.accuracy, "max_accuracy_m": self.max_accuracy},
                )
            meters = distance(cmd.geo, org.location)
            limit = allowed_distance(
                cmd.geo,
                org.location,
                default_accuracy=self.default_accuracy,
                fixed_margin=self.fixed_margin,
            )
            if meters > limit:
                raise OutOfRange(
                    f"You are {meters:.0f} m from the office (allowed {limit:.0f} m)",
                    details={"distance_m": round(meters, 1), "allowed_m": round(limit, 1)},
                )

            ledger = await self.ledgers.find_day(cmd.user_id, day)
            if ledger is not None:
                if ledger.needs_review:
                    raise LedgerNeedsReview()
                if ledger.finalized:
                    raise DayFinalized()

            # 5. Scan type
            try:
                current = day_state(ledger.sessions if ledger else ())
            except LedgerInvariantError as exc:
                # Only a stored ledger can hold more than one open session.
                assert ledger is not None
                await self._flag_for_review(ledger, str(exc))
                raise LedgerNeedsReview() from exc
            scan_type = infer_scan_type(current, qr.kind)

            # 6. Consistency
            ensure_transition(current, scan_type)

            # 7. Commit
            policy = await self.policies.working_policy(cmd.user_id, cmd.organization_id)
            await self.registry.record_usage(qr)
            if binding is BindingCheck.UNBOUND:
                await self.guard.bind(cmd.user_id, cmd.organization_id, cmd.device)
            if ledger is None:
                ledger = await self.ledgers.get_or_create_day(
                    cmd.user_id, cmd.organization_id, day
                )
            if scan_type == CHECK_IN:
                session = self.ledgers.apply_check_in(
                    ledger,
                    timestamp,
                    cmd.geo,
                    qr_code_id=qr.id,
                    device_id=cmd.device.device_id,
                )
            else:
                session = self.ledgers.apply_check_out(
                    ledger, timestamp, cmd.geo, qr_code_id=qr.id
                )
            status = self.ledgers.refresh_totals(ledger, policy, now)
            await self.db.commit()

        logger.info(
            "Accepted %s for user %s on %s (total=%dm, status=%s)",
            scan_type,
            cmd.user_id,
            day,
            status.total_minutes,
            status.status,
        )
        return ScanResult(
            accepted=True,
            scan_type=scan_type,
            session=session,
            day_status=status,
            date=day,
            device_bound=binding is BindingCheck.UNBOUND,
        )

    # ── Failure handling ────────────────────────────────────────────
    def _reject(self, cmd: ScanCommand, error: AttendanceError) -> ScanResult:
        logger.info("Rejected scan by user %s: %s", cmd.user_id, error.code)
        return ScanResult.rejected(error)

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback after failed scan raised")

    async def _flag_for_review(self, ledger: DayLedger, note: str) -> None:
        """Record the invariant violation in its own commit; the data itself is left as found."""
        self.ledgers.flag_for_review(ledger, note)
        await self.db.commit()
