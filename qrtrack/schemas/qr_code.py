"""Pydantic schemas for organization QR codes."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

QRKind = Literal["check-in", "check-out", "auto"]


class QRCodeIssue(BaseModel):
    kind: QRKind
    validity_minutes: int | None = Field(default=None, ge=1, le=60 * 24 * 365)


class QRCodeRegenerate(BaseModel):
    validity_minutes: int | None = Field(default=None, ge=1, le=60 * 24 * 365)


class QRCodeRead(BaseModel):
    id: int
    kind: str
    code: str
    issued_at: datetime
    expires_at: datetime | None
    usage_count: int
    active: bool
    deactivated_at: datetime | None = None

    model_config = {"from_attributes": True}


class QRCodeRegenerated(BaseModel):
    previous: QRCodeRead | None
    current: QRCodeRead


class QRCodeRotation(BaseModel):
    rotated: list[QRCodeRead]
