"""
Domain error taxonomy and global exception handlers.

Rejections are expected outcomes and carry a stable ``code`` that clients
switch on. Transient storage failures are flagged ``retryable``. Nothing
here leaks a stack trace to the client.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Domain errors ───────────────────────────────────────────────────
class AttendanceError(Exception):
    """Base class for every typed outcome the core reports to callers."""

    code = "ATTENDANCE_ERROR"
    status_code = 400
    message = "Attendance request rejected"
    next_step: str | None = None
    retryable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        next_step: str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        if next_step is not None:
            self.next_step = next_step
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "code": self.code,
            "next_step": self.next_step,
            "retryable": self.retryable,
            "success": False,
        }


class CodeNotFound(AttendanceError):
    code = "CODE_NOT_FOUND"
    status_code = 404
    message = "QR code not recognised for your organization"


class CodeExpired(AttendanceError):
    code = "CODE_EXPIRED"
    status_code = 410
    message = "QR code has expired or was replaced"
    next_step = "Scan the QR code currently displayed"


class DeviceNotAuthorized(AttendanceError):
    code = "DEVICE_NOT_AUTHORIZED"
    status_code = 403
    message = "This device is not registered to your account"
    next_step = "Request a device change from your administrator"


class OutOfRange(AttendanceError):
    code = "OUT_OF_RANGE"
    status_code = 403
    message = "You are outside the allowed area"
    next_step = "Move closer to the office and scan again"


class MockLocation(AttendanceError):
    code = "MOCK_LOCATION"
    status_code = 403
    message = "Mock location detected"
    next_step = "Disable mock location in the device settings"


class LocationNotConfigured(AttendanceError):
    code = "LOCATION_NOT_CONFIGURED"
    status_code = 409
    message = "Organization location is not configured"
    next_step = "Ask your administrator to configure the office location"


class InvalidTimestamp(AttendanceError):
    code = "INVALID_TIMESTAMP"
    status_code = 400
    message = "Scan timestamp is too far from server time"
    next_step = "Check the device clock and scan again"


class DuplicateCheckIn(AttendanceError):
    code = "DUPLICATE_CHECK_IN"
    status_code = 409
    message = "You are already checked in"
    next_step = "Scan the check-out code when you leave"


class NoActiveSession(AttendanceError):
    code = "NO_ACTIVE_SESSION"
    status_code = 409
    message = "No active check-in found for check-out"
    next_step = "Scan the check-in code first"


class DayFinalized(AttendanceError):
    code = "DAY_FINALIZED"
    status_code = 409
    message = "Attendance for this day has been finalized"
    next_step = "Contact your administrator for a manual correction"


class LedgerNeedsReview(AttendanceError):
    code = "LEDGER_NEEDS_REVIEW"
    status_code = 409
    message = "Attendance for this day is under administrator review"
    next_step = "Contact your administrator"


class DuplicateRequest(AttendanceError):
    code = "DUPLICATE_REQUEST"
    status_code = 409
    message = "A device change request is already pending"


class AlreadyResolved(AttendanceError):
    code = "ALREADY_RESOLVED"
    status_code = 409
    message = "Device change request has already been resolved"


class RequestNotFound(AttendanceError):
    code = "REQUEST_NOT_FOUND"
    status_code = 404
    message = "Device change request not found"


class NotFound(AttendanceError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Resource not found"


class StorageTimeout(AttendanceError):
    code = "STORAGE_TIMEOUT"
    status_code = 503
    message = "Storage did not respond in time"
    next_step = "Retry the scan"
    retryable = True


class StorageUnavailable(AttendanceError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    message = "Storage is temporarily unavailable"
    next_step = "Retry the scan"
    retryable = True


class ConcurrentUpdate(AttendanceError):
    code = "CONCURRENT_UPDATE"
    status_code = 503
    message = "Attendance was updated concurrently"
    next_step = "Retry the scan"
    retryable = True


class LedgerInvariantError(Exception):
    """A stored day ledger violates its invariants (programmer/data error)."""


# ── Handlers ────────────────────────────────────────────────────────
async def _attendance_error_handler(_request: Request, exc: AttendanceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "success": False},
    )


async def _integrity_error_handler(_request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Database integrity error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=409,
        content={"detail": "Database constraint violation", "success": False},
    )


async def _sqlalchemy_error_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal database error", "success": False},
    )


async def _generic_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""
    app.add_exception_handler(AttendanceError, _attendance_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
