"""
Working-time aggregation and daily status classification.

``compute_status`` is a pure function of a day's sessions, the user's
working policy and the current time. Callers persist the result.

Status rules, first match wins:

* an admin override, if one was recorded for the day
* ``full-day``  when total minutes ≥ ``full_day_minutes``
* ``half-day``  when total minutes ≥ ``half_day_minutes``
* ``present``   when total minutes > 0
* ``absent``    on a scheduled working day that is not a holiday
* ``holiday``   otherwise (excluded from absence accounting)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

from qrtrack.core.clock import ensure_utc

STATUS_ABSENT = "absent"
STATUS_PRESENT = "present"
STATUS_HALF_DAY = "half-day"
STATUS_FULL_DAY = "full-day"
STATUS_HOLIDAY = "holiday"

# Monday first, matching ``date.weekday()``.
DEFAULT_WEEKLY_SCHEDULE = (True, True, True, True, True, False, False)


class SessionLike(Protocol):
    check_in_at: datetime
    check_out_at: datetime | None
    duration_minutes: int


class LedgerLike(Protocol):
    date: str
    sessions: Sequence[SessionLike]
    override_status: str | None


@dataclass(frozen=True)
class DaySnapshot:
    """A ledger-shaped value for days that have no stored ledger yet."""

    date: str
    sessions: tuple = ()
    override_status: str | None = None


@dataclass(frozen=True)
class Holiday:
    day: date
    recurrence: str = "none"
    reason: str = ""

    def matches(self, other: date) -> bool:
        if self.recurrence == "weekly":
            return self.day.weekday() == other.weekday()
        if self.recurrence == "monthly":
            return self.day.day == other.day
        if self.recurrence == "yearly":
            return (self.day.month, self.day.day) == (other.month, other.day)
        return self.day == other


@dataclass(frozen=True)
class WorkingPolicy:
    work_start: time = time(9, 0)
    work_end: time = time(17, 0)
    timezone: str = "Asia/Kolkata"
    weekly_schedule: tuple[bool, ...] = DEFAULT_WEEKLY_SCHEDULE
    holidays: tuple[Holiday, ...] = field(default_factory=tuple)
    full_day_minutes: int = 480
    half_day_minutes: int = 240
    grace_minutes: int = 0

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def is_holiday(self, day: date) -> bool:
        return any(h.matches(day) for h in self.holidays)

    def is_working_day(self, day: date) -> bool:
        return bool(self.weekly_schedule[day.weekday()]) and not self.is_holiday(day)

    def window_close(self, day: date) -> datetime:
        """UTC instant at which the working window of *day* closes."""
        return datetime.combine(day, self.work_end, tzinfo=self.tz).astimezone(timezone.utc)


@dataclass(frozen=True)
class DayStatus:
    total_minutes: int
    status: str
    is_late: bool
    is_working_day: bool
    has_active_session: bool
    first_check_in: datetime | None = None
    last_check_out: datetime | None = None


def parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes from *start* to *end*, rounded down; 0 if *end* precedes *start*."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


def total_minutes(sessions: Sequence[SessionLike], now: datetime) -> int:
    total = 0
    for session in sessions:
        if session.check_out_at is None:
            total += elapsed_minutes(session.check_in_at, now)
        else:
            total += max(0, session.duration_minutes or 0)
    return total


def is_late(sessions: Sequence[SessionLike], policy: WorkingPolicy) -> bool:
    if not sessions:
        return False
    first = min(sessions, key=lambda s: ensure_utc(s.check_in_at))
    local = ensure_utc(first.check_in_at).astimezone(policy.tz)
    cutoff = datetime.combine(local.date(), policy.work_start, tzinfo=policy.tz) + timedelta(
        minutes=policy.grace_minutes
    )
    return local > cutoff


def classify(minutes: int, policy: WorkingPolicy, working_day: bool) -> str:
    if minutes >= policy.full_day_minutes:
        return STATUS_FULL_DAY
    if minutes >= policy.half_day_minutes:
        return STATUS_HALF_DAY
    if minutes > 0:
        return STATUS_PRESENT
    if working_day:
        return STATUS_ABSENT
    return STATUS_HOLIDAY


def compute_status(ledger: LedgerLike, policy: WorkingPolicy, now: datetime) -> DayStatus:
    day = date.fromisoformat(ledger.date)
    sessions = list(ledger.sessions)
    minutes = total_minutes(sessions, now)
    working_day = policy.is_working_day(day)

    status = ledger.override_status or classify(minutes, policy, working_day)

    check_ins = [ensure_utc(s.check_in_at) for s in sessions]
    check_outs = [ensure_utc(s.check_out_at) for s in sessions if s.check_out_at is not None]

    return DayStatus(
        total_minutes=minutes,
        status=status,
        is_late=is_late(sessions, policy),
        is_working_day=working_day,
        has_active_session=any(s.check_out_at is None for s in sessions),
        first_check_in=min(check_ins) if check_ins else None,
        last_check_out=max(check_outs) if check_outs else None,
    )
