"""
Device binding guard — one registered device per user.

The fingerprint is an opaque client-supplied string; it is only ever
compared for equality with the stored binding. Mutating calls must run
under the per-user device lock (see ``qrtrack.core.locks.device_key``);
the guard itself never commits.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock, utc_now
from qrtrack.core.exceptions import (AlreadyResolved, DuplicateRequest,
                                     RequestNotFound)
from qrtrack.models.device import DeviceBinding, DeviceChangeRequest

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

DECISIONS = {"approve": APPROVED, "reject": REJECTED}


class BindingCheck(str, enum.Enum):
    BOUND = "bound"
    UNBOUND = "unbound"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str
    device_type: str | None = None
    fingerprint: str | None = None


def device_cache_prefix(user_id: str) -> str:
    return f"device:{user_id}:"


def binding_matches(binding: DeviceBinding, device: DeviceInfo) -> bool:
    if binding.device_id != device.device_id:
        return False
    if binding.device_fingerprint is not None and binding.device_fingerprint != device.fingerprint:
        return False
    return True


class DeviceBindingGuard:
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

    def _invalidate(self, user_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_on_commit(self.db, device_cache_prefix(user_id))

    async def get_binding(self, user_id: str) -> DeviceBinding | None:
        result = await self.db.execute(
            select(DeviceBinding).where(DeviceBinding.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def check_binding(self, user_id: str, device: DeviceInfo) -> BindingCheck:
        binding = await self.get_binding(user_id)
        if binding is None:
            return BindingCheck.UNBOUND
        if binding_matches(binding, device):
            return BindingCheck.BOUND
        return BindingCheck.MISMATCH

    async def bind(self, user_id: str, organization_id: str, device: DeviceInfo) -> DeviceBinding:
        """Register *device* as the user's device, replacing any existing binding."""
        binding = await self.get_binding(user_id)
        if binding is None:
            binding = DeviceBinding(user_id=user_id, organization_id=organization_id)
            self.db.add(binding)
        binding.organization_id = organization_id
        binding.device_id = device.device_id
        binding.device_type = device.device_type
        binding.device_fingerprint = device.fingerprint
        binding.registered_at = self.clock()
        self._invalidate(user_id)
        logger.info("Bound device %s to user %s", device.device_id, user_id)
        return binding

    async def pending_request(self, user_id: str) -> DeviceChangeRequest | None:
        result = await self.db.execute(
            select(DeviceChangeRequest).where(
                DeviceChangeRequest.user_id == user_id,
                DeviceChangeRequest.status == PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def latest_request(self, user_id: str) -> DeviceChangeRequest | None:
        result = await self.db.execute(
            select(DeviceChangeRequest)
            .where(DeviceChangeRequest.user_id == user_id)
            .order_by(DeviceChangeRequest.requested_at.desc(), DeviceChangeRequest.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def file_change_request(
        self,
        user_id: str,
        organization_id: str,
        device: DeviceInfo,
        reason: str | None = None,
    ) -> DeviceChangeRequest:
        if await self.pending_request(user_id) is not None:
            raise DuplicateRequest(
                next_step="Wait for your administrator to resolve the pending request"
            )

        binding = await self.get_binding(user_id)
        request = DeviceChangeRequest(
            user_id=user_id,
            organization_id=organization_id,
            current_device_id=binding.device_id if binding else None,
            requested_device_id=device.device_id,
            requested_device_type=device.device_type,
            requested_device_fingerprint=device.fingerprint,
            reason=reason,
            status=PENDING,
            requested_at=self.clock(),
        )
        self.db.add(request)
        await self.db.flush()
        self._invalidate(user_id)
        logger.info(
            "Device change request %d filed by user %s (%s -> %s)",
            request.id,
            user_id,
            request.current_device_id,
            device.device_id,
        )
        return request

    async def get_request(self, request_id: int, organization_id: str) -> DeviceChangeRequest:
        result = await self.db.execute(
            select(DeviceChangeRequest).where(
                DeviceChangeRequest.id == request_id,
                DeviceChangeRequest.organization_id == organization_id,
            )
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise RequestNotFound()
        return request

    async def resolve_change_request(
        self,
        request: DeviceChangeRequest,
        decision: str,
        admin_reason: str | None,
        admin_id: str,
    ) -> DeviceChangeRequest:
        """Approve or reject a pending request; resolved requests are final."""
        if request.status != PENDING:
            raise AlreadyResolved(
                f"Device change request already {request.status}",
                next_step="File a new device change request",
            )

        status = DECISIONS[decision]
        if status == APPROVED:
            await self.bind(
                request.user_id,
                request.organization_id,
                DeviceInfo(
                    device_id=request.requested_device_id,
                    device_type=request.requested_device_type,
                    fingerprint=request.requested_device_fingerprint,
                ),
            )

        request.status = status
        request.resolved_at = self.clock()
        request.resolved_by = admin_id
        request.admin_reason = admin_reason
        self._invalidate(request.user_id)
        logger.info("Device change request %d %s by %s", request.id, status, admin_id)
        return request

    async def reset_binding(self, user_id: str, organization_id: str) -> bool:
        result = await self.db.execute(
            delete(DeviceBinding).where(
                DeviceBinding.user_id == user_id,
                DeviceBinding.organization_id == organization_id,
            )
        )
        self._invalidate(user_id)
        removed = (result.rowcount or 0) > 0
        logger.warning("ADMIN reset device binding for user %s (removed=%s)", user_id, removed)
        return removed

    async def list_requests(
        self, organization_id: str, status: str | None = None
    ) -> list[DeviceChangeRequest]:
        stmt = (
            select(DeviceChangeRequest)
            .where(DeviceChangeRequest.organization_id == organization_id)
            .order_by(DeviceChangeRequest.requested_at.desc())
        )
        if status:
            stmt = stmt.where(DeviceChangeRequest.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
