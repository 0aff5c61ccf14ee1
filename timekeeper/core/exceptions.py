"""
Domain error taxonomy and global exception handlers.

Services raise the ``TimekeeperError`` subclasses below; the handlers turn
them into ``{"detail", "code", "success": false}`` responses and prevent
stack-trace leakage for everything else.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


class TimekeeperError(Exception):
    """Base exception for business rule violations."""

    status_code = 400
    default_code = "ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details


class ValidationError(TimekeeperError):
    """Malformed input, unknown event type or a timestamp in the future."""

    default_code = "VALIDATION_ERROR"


class OrderingError(TimekeeperError):
    """The mutation would break the chronological order of the event log."""

    default_code = "OUT_OF_ORDER"


class ApprovalLockedError(TimekeeperError):
    default_code = "APPROVED_LOCK"


class CorrectionWindowError(TimekeeperError):
    default_code = "CORRECTION_WINDOW_EXPIRED"


class StateConflictError(TimekeeperError):
    """An approval decision was requested for something no longer pending."""

    default_code = "NOT_PENDING"


class AuthorizationError(TimekeeperError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(TimekeeperError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConcurrencyError(TimekeeperError):
    status_code = 409
    default_code = "CONCURRENT_MODIFICATION"


class AuditWriteError(TimekeeperError):
    status_code = 500
    default_code = "AUDIT_WRITE_FAILED"


async def _timekeeper_error_handler(_request: Request, exc: TimekeeperError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    content = {"detail": exc.message, "code": exc.code, "success": False}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "success": False},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request",
            "code": "VALIDATION_ERROR",
            "errors": errors,
            "success": False,
        },
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
    app.add_exception_handler(TimekeeperError, _timekeeper_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
