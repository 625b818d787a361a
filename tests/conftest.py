"""
Shared test fixtures for the qrtrack test suite.

Every test gets a fresh in-memory aiosqlite database, a fresh app (so the
cache and key locks start empty) and a frozen clock it can advance.
"""

import os
import sys
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-for-the-qrtrack-suite"

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession,
                                    async_sessionmaker, create_async_engine)
from sqlalchemy.pool import StaticPool

from qrtrack.api.v1.deps import get_db
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import FrozenClock
from qrtrack.core.locks import KeyedLocks
from qrtrack.core.security import create_access_token
from qrtrack.db.base import Base
from qrtrack.main import create_app

ORG = "org-1"
OTHER_ORG = "org-2"
ADMIN = "admin-1"
MEMBER = "member-1"

# Bengaluru office; 2026-03-02 is a Monday, 03:30 UTC is 09:00 in Asia/Kolkata.
OFFICE = {"latitude": 12.9716, "longitude": 77.5946}
START = datetime(2026, 3, 2, 3, 30, tzinfo=timezone.utc)


def auth_headers(user_id: str = MEMBER, org: str = ORG, role: str = "member") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, org, role)}"}


def scan_body(code: str, *, device: str = "phone-1", fingerprint: str | None = "fp-1",
              lat_offset: float = 0.0, accuracy: float | None = 20.0, **extra) -> dict:
    body = {
        "code": code,
        "geo": {
            "latitude": OFFICE["latitude"] + lat_offset,
            "longitude": OFFICE["longitude"],
            "accuracy": accuracy,
        },
        "device": {"id": device, "type": "android", "fingerprint": fingerprint},
    }
    body.update(extra)
    return body


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create all tables in a fresh in-memory database; dispose afterwards."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def app(session_factory: async_sessionmaker, clock: FrozenClock) -> FastAPI:
    application = create_app()
    application.state.clock = clock
    application.state.cache = TTLCache(clock=clock)
    application.state.locks = KeyedLocks()

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = _override_get_db
    return application


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct queries in tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def admin_headers() -> dict:
    return auth_headers(ADMIN, ORG, "admin")


@pytest.fixture
def member_headers() -> dict:
    return auth_headers(MEMBER, ORG, "member")


@pytest.fixture
async def office(async_client: AsyncClient, admin_headers: dict) -> dict:
    """Configure the organization's location: 100 m radius around the office."""
    resp = await async_client.put(
        "/api/v1/organizations/settings",
        json={**OFFICE, "radius_m": 100, "name": "Head Office"},
        headers=admin_headers,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
async def codes(async_client: AsyncClient, admin_headers: dict, office: dict) -> dict:
    """Issue one current code of each kind; returns {kind: code}."""
    issued = {}
    for kind in ("check-in", "check-out", "auto"):
        resp = await async_client.post(
            "/api/v1/qr-codes", json={"kind": kind}, headers=admin_headers
        )
        assert resp.status_code == 201, resp.text
        issued[kind] = resp.json()["code"]
    return issued
