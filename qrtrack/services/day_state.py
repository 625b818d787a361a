"""
Explicit per-day attendance state.

A day ledger is always in exactly one of three states, derived from its
sessions:

* ``EmptyDay``   no sessions yet
* ``OpenDay``    one session is active (checked in, not out)
* ``ClosedDay``  every session is closed

Transition guards live here so the scan pipeline and the ledger service
agree on what a check-in or check-out may do. A stored ledger with more
than one active session is not a state at all: ``day_state`` raises
``LedgerInvariantError`` and the ledger goes to admin review.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from qrtrack.core.clock import ensure_utc
from qrtrack.core.exceptions import (DuplicateCheckIn, LedgerInvariantError,
                                     NoActiveSession)
from qrtrack.services.working_time import SessionLike

CHECK_IN = "check-in"
CHECK_OUT = "check-out"
AUTO = "auto"


@dataclass(frozen=True)
class EmptyDay:
    pass


@dataclass(frozen=True)
class OpenDay:
    active: SessionLike
    closed: tuple[SessionLike, ...] = ()


@dataclass(frozen=True)
class ClosedDay:
    sessions: tuple[SessionLike, ...]


DayState = Union[EmptyDay, OpenDay, ClosedDay]


def day_state(sessions: Sequence[SessionLike]) -> DayState:
    if not sessions:
        return EmptyDay()

    active = [s for s in sessions if s.check_out_at is None]
    if len(active) > 1:
        raise LedgerInvariantError(f"{len(active)} active sessions in one day ledger")

    closed = tuple(s for s in sessions if s.check_out_at is not None)
    if active:
        return OpenDay(active=active[0], closed=closed)
    return ClosedDay(sessions=closed)


def infer_scan_type(state: DayState, qr_kind: str) -> str:
    """A typed code decides the scan type; an ``auto`` code toggles on the day's state."""
    if qr_kind in (CHECK_IN, CHECK_OUT):
        return qr_kind
    return CHECK_OUT if isinstance(state, OpenDay) else CHECK_IN


def ensure_can_check_in(state: DayState) -> None:
    if isinstance(state, OpenDay):
        raise DuplicateCheckIn()


def ensure_can_check_out(state: DayState) -> SessionLike:
    if isinstance(state, OpenDay):
        return state.active
    raise NoActiveSession()


def ensure_transition(state: DayState, scan_type: str) -> None:
    if scan_type == CHECK_IN:
        ensure_can_check_in(state)
    else:
        ensure_can_check_out(state)


def closing_duration(check_in_at: datetime, check_out_at: datetime) -> tuple[int, bool]:
    """Return ``(duration_minutes, clock_anomaly)`` for closing a session.

    Durations are whole minutes rounded down. A check-out that precedes its
    check-in (client clock skew) yields 0 minutes and flags the anomaly.
    """
    seconds = (ensure_utc(check_out_at) - ensure_utc(check_in_at)).total_seconds()
    if seconds < 0:
        return 0, True
    return int(seconds // 60), False


def opening_time(state: DayState, check_in_at: datetime) -> tuple[datetime, bool]:
    """Return ``(check_in_at, clock_anomaly)`` for opening a session.

    Sessions of one day never overlap: a check-in stamped before the day's
    last check-out (client clock skew) starts at that check-out instead and
    flags the anomaly.
    """
    if not isinstance(state, ClosedDay):
        return check_in_at, False
    last_out = max(ensure_utc(s.check_out_at) for s in state.sessions if s.check_out_at is not None)
    if ensure_utc(check_in_at) < last_out:
        return last_out, True
    return check_in_at, False
