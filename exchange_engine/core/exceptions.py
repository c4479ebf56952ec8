"""
Domain errors for the exchange engine and their HTTP mapping.

Services raise these; the handlers registered on the FastAPI app turn them
into JSON responses with a single descriptive ``error`` string.
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE codes that mean "another transaction got there first"
LOCK_CONFLICT_SQLSTATES = {
    "55P03",  # lock_not_available (lock_timeout / NOWAIT)
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "23505",  # unique_violation from a concurrent insert of the same key
}


class ExchangeError(Exception):
    """Base class for all exchange engine errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExchangeError):
    """Missing/malformed input, quantity out of range, exceeds returnable quantity."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class NotFoundError(ExchangeError):
    """Original order, order item, product, or return not found."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InvalidStateError(ExchangeError):
    """Order not exchange-eligible, or a referenced record already finalized."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_state"


class ConflictError(ExchangeError):
    """Lock contention or concurrent modification. Safe to retry."""
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InternalError(ExchangeError):
    """Unexpected store or disposition failure."""


def is_lock_conflict(exc: DBAPIError) -> bool:
    """Tell whether a driver error was caused by lock contention."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in LOCK_CONFLICT_SQLSTATES:
        return True
    # SQLite reports contention only through the message
    return "database is locked" in str(orig or exc).lower()


def translate_db_error(exc: DBAPIError) -> ExchangeError:
    """Map a driver error to the domain taxonomy without leaking query text."""
    if is_lock_conflict(exc):
        return ConflictError(
            "A concurrent transaction conflicted with this exchange. Please retry."
        )
    return InternalError("Exchange processing failed")


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the domain error handlers to the application."""

    @app.exception_handler(ExchangeError)
    async def exchange_error_handler(request: Request, exc: ExchangeError):
        if isinstance(exc, InternalError):
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "type": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else first.get("msg")
        else:
            message = "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": message, "type": ValidationError.code},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Exchange processing failed", "type": InternalError.code},
        )
