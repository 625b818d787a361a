"""Pydantic schemas for day ledgers, sessions and health."""

from __future__ import annotations

import datetime as dt
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


# ── Sessions ────────────────────────────────────────────────────────
class SessionRead(BaseModel):
    id: int
    check_in_at: datetime
    check_out_at: datetime | None
    duration_minutes: int
    is_active: bool
    clock_anomaly: bool
    check_in_verified: bool
    check_out_verified: bool | None = None
    device_id: str | None = None

    model_config = {"from_attributes": True}


# ── Day status ──────────────────────────────────────────────────────
class DayStatusRead(BaseModel):
    total_minutes: int
    status: str
    is_late: bool
    is_working_day: bool
    has_active_session: bool

    model_config = {"from_attributes": True}


class DayView(BaseModel):
    user_id: str
    date: str
    sessions: list[SessionRead]
    total_minutes: int
    status: str
    is_late: bool
    is_working_day: bool
    has_active_session: bool
    finalized: bool = False
    needs_review: bool = False
    override_status: str | None = None


class LedgerRead(BaseModel):
    id: int
    user_id: str
    date: str
    total_working_minutes: int
    status: str
    is_late: bool
    finalized: bool
    needs_review: bool
    review_note: str | None = None
    override_status: str | None = None
    override_notes: str | None = None
    version: int

    model_config = {"from_attributes": True}


class HistoryResponse(BaseModel):
    user_id: str
    days: int
    ledgers: list[LedgerRead]


# ── Admin writes ────────────────────────────────────────────────────
class OverrideCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    date: dt.date
    status: Literal["absent", "present", "half-day", "full-day"]
    notes: str | None = Field(default=None, max_length=500)


class FinalizeResponse(BaseModel):
    date: str
    finalized: int
    already_finalized: int
    pending: list[str]


# ── Health ──────────────────────────────────────────────────────────
class HealthResponse(BaseModel):
    db: bool
    redis: bool


# ── Generic ────────────────────────────────────────────────────────
class DeleteResponse(BaseModel):
    success: bool
    message: str
