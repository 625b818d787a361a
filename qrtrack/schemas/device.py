"""Pydantic schemas for device bindings and change requests."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from qrtrack.schemas.scan import DeviceIn


class DeviceBindingRead(BaseModel):
    user_id: str
    device_id: str
    device_type: str | None
    registered_at: datetime

    model_config = {"from_attributes": True}


class ChangeRequestCreate(BaseModel):
    device: DeviceIn
    reason: str | None = Field(default=None, max_length=500)


class ChangeRequestRead(BaseModel):
    id: int
    user_id: str
    current_device_id: str | None
    requested_device_id: str
    requested_device_type: str | None
    reason: str | None
    status: str
    requested_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    admin_reason: str | None = None

    model_config = {"from_attributes": True}


class ResolveRequest(BaseModel):
    decision: Literal["approve", "reject"]
    admin_reason: str | None = Field(default=None, max_length=500)


class DeviceStatusResponse(BaseModel):
    binding: DeviceBindingRead | None
    latest_request: ChangeRequestRead | None


class DeviceResetResponse(BaseModel):
    user_id: str
    removed: bool
