"""
Day ledger endpoints — live day status, history, and the admin actions
that write to a ledger outside the scan path (override, finalize, review).
"""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.api.v1.deps import (get_cache, get_clock, get_current_identity,
                                 get_db, get_locks, require_admin)
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock
from qrtrack.core.exceptions import NotFound
from qrtrack.core.locks import KeyedLocks, ledger_key
from qrtrack.core.security import Identity
from qrtrack.models.ledger import DayLedger
from qrtrack.schemas.attendance import (DayView, FinalizeResponse,
                                        HistoryResponse, LedgerRead,
                                        OverrideCreate, SessionRead)
from qrtrack.services.policy import PolicyService, local_date
from qrtrack.services.session_ledger import SessionLedger, day_cache_key
from qrtrack.services.working_time import DaySnapshot, compute_status

router = APIRouter(prefix="/attendance", tags=["attendance"])
logger = logging.getLogger(__name__)


async def _day_view(
    db: AsyncSession,
    user_id: str,
    organization_id: str,
    day: date,
    clock: Clock,
    cache: TTLCache,
) -> DayView:
    """Live status for one user-day; cached only once nothing is ticking."""
    key = day_cache_key(organization_id, user_id, day.isoformat())
    cached = cache.get(key)
    if cached is not None:
        return cached

    policy = await PolicyService(db, clock=clock, cache=cache).working_policy(user_id, organization_id)
    ledger = await SessionLedger(db, clock=clock, cache=cache).find_day(user_id, day)
    if ledger is not None and ledger.organization_id != organization_id:
        raise NotFound("No attendance for this user in your organization")

    if ledger is None:
        current = compute_status(DaySnapshot(date=day.isoformat()), policy, clock())
    elif ledger.finalized:
        current = compute_status(ledger, policy, policy.window_close(day))
    else:
        current = compute_status(ledger, policy, clock())

    view = DayView(
        user_id=user_id,
        date=day.isoformat(),
        sessions=[SessionRead.model_validate(s) for s in (ledger.sessions if ledger else [])],
        total_minutes=current.total_minutes,
        status=current.status,
        is_late=current.is_late,
        is_working_day=current.is_working_day,
        has_active_session=current.has_active_session,
        finalized=bool(ledger and ledger.finalized),
        needs_review=bool(ledger and ledger.needs_review),
        override_status=ledger.override_status if ledger else None,
    )
    if not current.has_active_session:
        cache.set(key, view)
    return view


# ── Caller ──────────────────────────────────────────────────────────
@router.get("/today", response_model=DayView)
async def today(
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> DayView:
    """The caller's own status for the current organization-local day."""
    profile = await PolicyService(db, clock=clock, cache=cache).profile(identity.organization_id)
    day = local_date(clock(), profile)
    return await _day_view(db, identity.user_id, identity.organization_id, day, clock, cache)


@router.get("/me/history", response_model=HistoryResponse)
async def my_history(
    days: int = Query(default=30, ge=1, le=366),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> HistoryResponse:
    profile = await PolicyService(db, clock=clock, cache=cache).profile(identity.organization_id)
    ledgers = await SessionLedger(db, clock=clock, cache=cache).history(
        identity.user_id, days, local_date(clock(), profile)
    )
    return HistoryResponse(
        user_id=identity.user_id,
        days=days,
        ledgers=[LedgerRead.model_validate(ledger) for ledger in ledgers],
    )


# ── Review queue (admin) ────────────────────────────────────────────
@router.get("/review", response_model=list[LedgerRead])
async def review_queue(
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
) -> list[DayLedger]:
    """Ledgers flagged for manual correction."""
    return await SessionLedger(db).list_needing_review(admin.organization_id)


@router.post("/review/{ledger_id}/clear", response_model=LedgerRead)
async def clear_review(
    ledger_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> DayLedger:
    ledgers = SessionLedger(db, clock=clock, cache=cache)
    ledger = await ledgers.get(ledger_id, admin.organization_id)
    if ledger is None:
        raise NotFound("Day ledger not found")

    async with locks.hold(ledger_key(ledger.user_id, ledger.date)):
        ledgers.clear_review(ledger)
        await db.commit()
    logger.info("Review flag on ledger %d cleared by %s", ledger_id, admin.user_id)
    return ledger


# ── Override / finalize (admin) ─────────────────────────────────────
@router.post("/override", response_model=LedgerRead)
async def override_day(
    body: OverrideCreate,
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> DayLedger:
    """Set a manual day status; it wins over the computed status."""
    ledgers = SessionLedger(db, clock=clock, cache=cache)
    policy = await PolicyService(db, clock=clock, cache=cache).working_policy(
        body.user_id, admin.organization_id
    )
    day = body.date.isoformat()

    async with locks.hold(ledger_key(body.user_id, day)):
        ledger = await ledgers.get_or_create_day(body.user_id, admin.organization_id, day)
        if ledger.organization_id != admin.organization_id:
            raise NotFound("No attendance for this user in your organization")
        ledgers.set_override(ledger, body.status, body.notes, admin.user_id)
        moment = policy.window_close(body.date) if ledger.finalized else clock()
        ledgers.refresh_totals(ledger, policy, moment)
        await db.commit()
    return ledger


@router.post("/finalize", response_model=FinalizeResponse)
async def finalize_day(
    day: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
    admin: Identity = Depends(require_admin),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLocks = Depends(get_locks),
) -> FinalizeResponse:
    """Freeze every ledger of *day* whose working window has closed."""
    ledgers = SessionLedger(db, clock=clock, cache=cache)
    policies = PolicyService(db, clock=clock, cache=cache)
    now = clock()

    finalized = already = 0
    pending: list[str] = []
    for ledger in await ledgers.list_for_date(admin.organization_id, day):
        if ledger.finalized:
            already += 1
            continue
        policy = await policies.working_policy(ledger.user_id, admin.organization_id)
        if ledger.needs_review or now < policy.window_close(day):
            pending.append(ledger.user_id)
            continue
        async with locks.hold(ledger_key(ledger.user_id, ledger.date)):
            ledgers.finalize(ledger, policy)
            await db.commit()
        finalized += 1

    logger.info(
        "Finalized %d ledgers for %s on %s (%d pending)",
        finalized,
        admin.organization_id,
        day,
        len(pending),
    )
    return FinalizeResponse(
        date=day.isoformat(),
        finalized=finalized,
        already_finalized=already,
        pending=pending,
    )


# ── Any user-day (self or admin) ────────────────────────────────────
@router.get("/{user_id}/{day}", response_model=DayView)
async def day_status(
    user_id: str,
    day: date,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    clock: Clock = Depends(get_clock),
    cache: TTLCache = Depends(get_cache),
) -> DayView:
    if user_id != identity.user_id and not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only view your own attendance",
        )
    return await _day_view(db, user_id, identity.organization_id, day, clock, cache)
