"""
FastAPI dependencies — identity guards, database session and the
per-process collaborators kept on ``app.state``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import Clock
from qrtrack.core.locks import KeyedLocks
from qrtrack.core.security import Identity, decode_access_token
from qrtrack.db.session import async_session_factory

# auto_error=False so we can fall back to the cookie when the header is missing
bearer_scheme = HTTPBearer(auto_error=False)


# ── Database session ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


# ── Process collaborators ───────────────────────────────────────────
def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_locks(request: Request) -> KeyedLocks:
    return request.app.state.locks


# ── Identity ────────────────────────────────────────────────────────
async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    access_token: Optional[str] = Cookie(default=None),
) -> Identity:
    """Decode the JWT from the Authorization header or the access_token cookie."""

    # Priority: Header > Cookie
    token = credentials.credentials if credentials else None
    if not token and access_token:
        token = access_token.split(" ", 1)[1] if access_token.startswith("Bearer ") else access_token

    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exc

    identity = decode_access_token(token)
    if identity is None:
        raise credentials_exc
    return identity


async def require_admin(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """Only allow admin role to proceed."""
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return identity


async def require_member(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """Scans and device requests are made by people, not kiosk displays."""
    if identity.role == "kiosk":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Kiosk tokens cannot perform this action",
        )
    return identity
