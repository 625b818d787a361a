"""Pydantic schemas for organization settings and per-user working policy."""

from __future__ import annotations

import datetime as dt
import re
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _check_hhmm(v: str | None) -> str | None:
    if v is not None and not _HHMM_RE.match(v):
        raise ValueError("Time must be HH:MM (24h)")
    return v


def _check_timezone(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {v}") from exc
    return v


# ── Organization ────────────────────────────────────────────────────
class OrganizationSettingsRead(BaseModel):
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

    model_config = {"from_attributes": True}


class OrganizationSettingsUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    latitude: float | None = Field(default=None, ge=-90, le=90, allow_inf_nan=False)
    longitude: float | None = Field(default=None, ge=-180, le=180, allow_inf_nan=False)
    radius_m: float | None = Field(default=None, gt=0, le=100_000, allow_inf_nan=False)
    timezone: str | None = None
    work_start: str | None = None
    work_end: str | None = None
    full_day_minutes: int | None = Field(default=None, ge=1, le=1440)
    half_day_minutes: int | None = Field(default=None, ge=1, le=1440)
    grace_minutes: int | None = Field(default=None, ge=0, le=720)

    @field_validator("work_start", "work_end")
    @classmethod
    def _hhmm(cls, v: str | None) -> str | None:
        return _check_hhmm(v)

    @field_validator("timezone")
    @classmethod
    def _tz(cls, v: str | None) -> str | None:
        return _check_timezone(v)

    @model_validator(mode="after")
    def _thresholds(self) -> "OrganizationSettingsUpdate":
        if (
            self.full_day_minutes is not None
            and self.half_day_minutes is not None
            and self.half_day_minutes > self.full_day_minutes
        ):
            raise ValueError("half_day_minutes must not exceed full_day_minutes")
        return self


# ── Working policy ──────────────────────────────────────────────────
class PolicyRead(BaseModel):
    user_id: str
    work_start: str
    work_end: str
    timezone: str
    weekly_schedule: dict[str, bool]
    holidays: list["HolidayRead"]


class PolicyUpdate(BaseModel):
    work_start: str | None = None
    work_end: str | None = None
    timezone: str | None = None
    monday: bool | None = None
    tuesday: bool | None = None
    wednesday: bool | None = None
    thursday: bool | None = None
    friday: bool | None = None
    saturday: bool | None = None
    sunday: bool | None = None

    @field_validator("work_start", "work_end")
    @classmethod
    def _hhmm(cls, v: str | None) -> str | None:
        return _check_hhmm(v)

    @field_validator("timezone")
    @classmethod
    def _tz(cls, v: str | None) -> str | None:
        return _check_timezone(v)


class HolidayCreate(BaseModel):
    date: dt.date
    reason: str = Field(min_length=1, max_length=200)
    recurrence: Literal["none", "weekly", "monthly", "yearly"] = "none"


class HolidayRead(BaseModel):
    id: int
    date: str
    reason: str
    recurrence: str

    model_config = {"from_attributes": True}


PolicyRead.model_rebuild()
