"""
qrtrack — Application entry point.

This is the **only** file that assembles the app. All business logic
lives in the `services/` package; `api/` only adapts it to HTTP.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from qrtrack.api.v1.api import api_router
from qrtrack.api.v1.endpoints.scan import limiter
from qrtrack.core.cache import TTLCache
from qrtrack.core.clock import utc_now
from qrtrack.core.config import settings
from qrtrack.core.exceptions import register_exception_handlers
from qrtrack.core.locks import KeyedLocks
from qrtrack.db.base import Base
from qrtrack.db.session import engine

# Ensure all models are imported so metadata.create_all can see them
from qrtrack.models.device import DeviceBinding, DeviceChangeRequest  # noqa: F401
from qrtrack.models.ledger import AttendanceSession, DayLedger  # noqa: F401
from qrtrack.models.organization import OrganizationSettings  # noqa: F401
from qrtrack.models.policy import CustomHoliday, WorkingPolicy  # noqa: F401
from qrtrack.models.qr_code import OrganizationQRCode  # noqa: F401

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")

    logger.info("🚀 %s v%s started", settings.PROJECT_NAME, settings.VERSION)
    yield
    await engine.dispose()
    logger.info("Shutdown complete")


# ── App factory ─────────────────────────────────────────────────────
def create_app() -> FastAPI:
    application = FastAPI(
        title="qrtrack",
        description="QR code attendance core",
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Per-process collaborators, reached through api/v1/deps.py
    application.state.clock = utc_now
    application.state.cache = TTLCache(
        clock=utc_now,
        default_ttl=settings.CACHE_TTL_SECONDS,
        max_entries=settings.CACHE_MAX_ENTRIES,
    )
    application.state.locks = KeyedLocks()
    application.state.limiter = limiter

    # CORS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handlers (prevent stack-trace leakage)
    register_exception_handlers(application)

    # Mount API v1
    application.include_router(api_router, prefix=settings.API_V1_PREFIX)

    return application


app = create_app()
