"""
Async SQLAlchemy engine & session factory (asyncpg driver).
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from qrtrack.core.config import settings

engine_args = {
    "echo": False,
    "pool_pre_ping": True,
}

if "postgresql" in settings.DATABASE_URL:
    engine_args.update(
        {
            "pool_size": 20,
            "max_overflow": 10,
            "pool_recycle": 300,
            "pool_timeout": settings.STORAGE_TIMEOUT_SECONDS,
            # Bound every statement so a stalled database fails the scan closed.
            "connect_args": {
                "timeout": settings.STORAGE_TIMEOUT_SECONDS,
                "command_timeout": settings.STORAGE_TIMEOUT_SECONDS,
            },
        }
    )

engine = create_async_engine(
    settings.DATABASE_URL,
    **engine_args,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
