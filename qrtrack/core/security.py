"""
JWT access-token verification for the identity supplied by the upstream
auth layer.

Tokens carry ``sub`` (user id), ``org`` (organization id) and ``role``.
``create_access_token`` produces tokens in the same shape so the auth
service and the test suite stay compatible with the decoder.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from qrtrack.core.config import settings

_ALGORITHM = settings.ALGORITHM
_SECRET = settings.SECRET_KEY

ROLES = {"admin", "member", "kiosk"}


@dataclass(frozen=True)
class Identity:
    user_id: str
    organization_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ── JWT tokens ──────────────────────────────────────────────────────
def create_access_token(
    user_id: str,
    organization_id: str,
    role: str = "member",
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return jwt.encode(
        {
            "exp": expire,
            "sub": str(user_id),
            "org": str(organization_id),
            "role": role,
            "type": "access",
        },
        _SECRET,
        algorithm=_ALGORITHM,
    )


def decode_access_token(token: str) -> Identity | None:
    """Return the caller's identity if the *access* token is valid, else ``None``."""
    try:
        payload = jwt.decode(token, _SECRET, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None

    user_id = payload.get("sub")
    org_id = payload.get("org")
    role = payload.get("role")
    if not user_id or not org_id or role not in ROLES:
        return None
    return Identity(user_id=str(user_id), organization_id=str(org_id), role=role)
