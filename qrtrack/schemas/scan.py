"""Pydantic schemas for the scan endpoint."""

from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from qrtrack.schemas.attendance import DayStatusRead, SessionRead

_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


class GeoIn(BaseModel):
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)
    accuracy: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    is_mock: bool = False


class DeviceIn(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    type: str | None = Field(default=None, max_length=50)
    fingerprint: str | None = Field(default=None, max_length=256)

    @field_validator("id")
    @classmethod
    def _id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Device id must not be empty")
        return v


class ScanRequest(BaseModel):
    code: str
    geo: GeoIn
    device: DeviceIn
    timestamp: datetime | None = None

    @field_validator("code")
    @classmethod
    def _code(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Code must not be empty")
        if not _CODE_RE.match(v):
            raise ValueError("Code must be 8-128 URL-safe characters")
        return v


class ScanResponse(BaseModel):
    accepted: bool
    success: bool
    scan_type: str | None = None
    reason: str | None = None
    message: str
    next_step: str | None = None
    retryable: bool = False
    date: str | None = None
    device_bound: bool = False
    session: SessionRead | None = None
    day_status: DayStatusRead | None = None
    details: dict = Field(default_factory=dict)
