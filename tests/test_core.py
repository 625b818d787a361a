"""Unit tests for the cache, key locks, tokens and scan failure mapping."""

import asyncio
from datetime import timedelta

import pytest
from conftest import ORG, START
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import FrozenClock
from qrtrack.core.exceptions import CodeNotFound
from qrtrack.core.locks import KeyedLocks
from qrtrack.core.security import create_access_token, decode_access_token
from qrtrack.services.device_guard import DeviceInfo
from qrtrack.services.geo import GeoPoint
from qrtrack.services.scan_validator import ScanCommand, ScanValidator


# ── TTLCache ────────────────────────────────────────────────────────
def test_cache_entries_expire():
    clock = FrozenClock(START)
    cache = TTLCache(clock=clock, default_ttl=30)
    cache.set("day:org-1:u1:2026-03-02", "view")
    assert cache.get("day:org-1:u1:2026-03-02") == "view"

    clock.advance(seconds=31)
    assert cache.get("day:org-1:u1:2026-03-02") is None


def test_cache_invalidate_by_prefix():
    cache = TTLCache(clock=FrozenClock(START))
    cache.set("day:org-1:u1:2026-03-02", 1)
    cache.set("day:org-1:u1:2026-03-03", 2)
    cache.set("day:org-1:u2:2026-03-02", 3)
    cache.set("qr:org-1:active", 4)

    assert cache.invalidate("day:org-1:u1:") == 2
    assert cache.get("day:org-1:u2:2026-03-02") == 3
    assert cache.get("qr:org-1:active") == 4
    assert cache.invalidate("day:org-9:") == 0


def test_cache_evicts_least_recently_used():
    cache = TTLCache(clock=FrozenClock(START), max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats()["entries"] == 2


@pytest.mark.asyncio
async def test_invalidation_waits_for_commit(db_session: AsyncSession):
    cache = TTLCache(clock=FrozenClock(START))
    await db_session.execute(text("SELECT 1"))
    cache.invalidate_on_commit(db_session, "day:org-1:u1:")

    # A read that lands before the commit caches the old state.
    cache.set("day:org-1:u1:2026-03-02", "old")
    assert cache.get("day:org-1:u1:2026-03-02") == "old"

    await db_session.commit()
    assert cache.get("day:org-1:u1:2026-03-02") is None


@pytest.mark.asyncio
async def test_rollback_discards_pending_invalidation(db_session: AsyncSession):
    cache = TTLCache(clock=FrozenClock(START))
    cache.set("qr:org-1:active", "codes")
    await db_session.execute(text("SELECT 1"))
    cache.invalidate_on_commit(db_session, "qr:org-1:")
    await db_session.rollback()

    await db_session.execute(text("SELECT 1"))
    await db_session.commit()
    assert cache.get("qr:org-1:active") == "codes"


# ── KeyedLocks ──────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_locks_serialize_same_key():
    locks = KeyedLocks()
    order = []

    async def worker(name: str):
        async with locks.hold("ledger:u1:2026-03-02"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_locks_do_not_block_other_keys():
    locks = KeyedLocks()
    async with locks.hold("device:u1"):
        await asyncio.wait_for(_enter(locks, "device:u2"), timeout=1)
        assert len(locks) == 1


async def _enter(locks: KeyedLocks, key: str) -> None:
    async with locks.hold(key):
        pass


# ── Tokens ──────────────────────────────────────────────────────────
def test_token_round_trip():
    identity = decode_access_token(create_access_token("u1", ORG, "admin"))
    assert identity is not None
    assert (identity.user_id, identity.organization_id, identity.role) == ("u1", ORG, "admin")
    assert identity.is_admin


def test_expired_or_unknown_role_token_rejected():
    assert decode_access_token(create_access_token("u1", ORG, expires_delta=timedelta(seconds=-1))) is None
    assert decode_access_token(create_access_token("u1", ORG, role="root")) is None
    assert decode_access_token("not.a.token") is None


@pytest.mark.asyncio
async def test_cookie_token_accepted(async_client, codes: dict):
    async_client.cookies.set("access_token", f"Bearer {create_access_token('admin-1', ORG, 'admin')}")
    resp = await async_client.get("/api/v1/qr-codes")
    async_client.cookies.clear()
    assert resp.status_code == 200


# ── Scan failure mapping ────────────────────────────────────────────
def _command() -> ScanCommand:
    return ScanCommand(
        code="any-code-12345678",
        user_id="u1",
        organization_id=ORG,
        geo=GeoPoint(12.9716, 77.5946, 10.0),
        device=DeviceInfo("phone-1"),
    )


def _validator(db: AsyncSession, **kwargs) -> ScanValidator:
    return ScanValidator(db, locks=KeyedLocks(), clock=FrozenClock(START), **kwargs)


@pytest.mark.asyncio
async def test_storage_timeout_is_retryable(db_session: AsyncSession, monkeypatch):
    validator = _validator(db_session, timeout=0.01)

    async def slow(*_args):
        await asyncio.sleep(1)

    monkeypatch.setattr(validator, "_attempt", slow)
    result = await validator.scan(_command())
    assert result.accepted is False
    assert result.reason == "STORAGE_TIMEOUT"
    assert result.error.retryable is True


@pytest.mark.asyncio
async def test_conflicts_retry_then_give_up(db_session: AsyncSession, monkeypatch):
    validator = _validator(db_session, max_retries=3)
    calls = []

    async def conflicting(*_args):
        calls.append(1)
        if len(calls) % 2:
            raise StaleDataError("version mismatch")
        raise IntegrityError("INSERT", {}, Exception("unique"))

    monkeypatch.setattr(validator, "_attempt", conflicting)
    result = await validator.scan(_command())
    assert len(calls) == 3
    assert result.reason == "CONCURRENT_UPDATE"
    assert result.error.retryable is True


@pytest.mark.asyncio
async def test_conflict_then_success(db_session: AsyncSession, monkeypatch):
    validator = _validator(db_session)
    calls = []

    async def flaky(*_args):
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("version mismatch")
        raise CodeNotFound()

    monkeypatch.setattr(validator, "_attempt", flaky)
    result = await validator.scan(_command())
    assert len(calls) == 2
    assert result.reason == "CODE_NOT_FOUND"


@pytest.mark.asyncio
async def test_other_storage_errors_are_unavailable(db_session: AsyncSession, monkeypatch):
    validator = _validator(db_session)

    async def broken(*_args):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(validator, "_attempt", broken)
    result = await validator.scan(_command())
    assert result.reason == "STORAGE_UNAVAILABLE"
    assert result.error.retryable is True
