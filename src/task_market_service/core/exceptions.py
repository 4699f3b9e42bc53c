"""Service error type, error taxonomy, and exception handlers."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = ["ErrorKind", "ServiceError", "register_exception_handlers"]


class ErrorKind(StrEnum):
    """Coarse error classes exposed to callers alongside the reason code."""

    VALIDATION = "validation"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


# Reason code -> kind. Codes not listed here fall back to a kind derived
# from the HTTP status.
_ERROR_KINDS: dict[str, ErrorKind] = {
    "INVALID_JSON": ErrorKind.VALIDATION,
    "INVALID_PAYLOAD": ErrorKind.VALIDATION,
    "INVALID_AMOUNT": ErrorKind.VALIDATION,
    "INVALID_CATEGORY": ErrorKind.VALIDATION,
    "DUPLICATE_BID": ErrorKind.VALIDATION,
    "SELF_BID": ErrorKind.VALIDATION,
    "UNSUPPORTED_MEDIA_TYPE": ErrorKind.VALIDATION,
    "PAYLOAD_TOO_LARGE": ErrorKind.VALIDATION,
    "UNAUTHENTICATED": ErrorKind.UNAUTHENTICATED,
    "UNAUTHORIZED": ErrorKind.UNAUTHORIZED,
    "TASK_NOT_FOUND": ErrorKind.NOT_FOUND,
    "BID_NOT_FOUND": ErrorKind.NOT_FOUND,
    "ACCOUNT_NOT_FOUND": ErrorKind.NOT_FOUND,
    "TASK_NOT_OPEN": ErrorKind.INVALID_STATE,
    "BID_NOT_PENDING": ErrorKind.INVALID_STATE,
    "INVALID_STATE": ErrorKind.INVALID_STATE,
    "INVALID_TRANSITION": ErrorKind.INVALID_STATE,
    "NO_ACCEPTED_BID": ErrorKind.INVALID_STATE,
    "INSUFFICIENT_BALANCE": ErrorKind.INSUFFICIENT_BALANCE,
    "CONFLICT": ErrorKind.CONFLICT,
    "PAYLOAD_MISMATCH": ErrorKind.CONFLICT,
    "TIMEOUT": ErrorKind.TIMEOUT,
    "UNAVAILABLE": ErrorKind.UNAVAILABLE,
}

_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHENTICATED,
    402: ErrorKind.INSUFFICIENT_BALANCE,
    403: ErrorKind.UNAUTHORIZED,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    503: ErrorKind.UNAVAILABLE,
    504: ErrorKind.TIMEOUT,
}

_RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.UNAVAILABLE})


class ServiceError(Exception):
    """
    Error raised by any layer of the service.

    Carries a machine-readable reason code (``error``), a developer-facing
    message, the HTTP status to map to, and structured details. The message
    is never meant for end users; callers translate ``kind`` and ``error``.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, object] = details if details is not None else {}

    @property
    def kind(self) -> ErrorKind:
        """Error class of this reason code."""
        known = _ERROR_KINDS.get(self.error)
        if known is not None:
            return known
        return _STATUS_KINDS.get(self.status_code, ErrorKind.INTERNAL)

    @property
    def retryable(self) -> bool:
        """True when the whole operation may be retried unchanged."""
        return self.kind in _RETRYABLE_KINDS

    def to_dict(self) -> dict[str, object]:
        """Render the error envelope returned over HTTP."""
        return {
            "error": self.error,
            "kind": str(self.kind),
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "kind": str(ErrorKind.INTERNAL),
            "message": "An unexpected error occurred",
            "details": {},
            "retryable": False,
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404/405 from the router)."""
    if exc.status_code == 405:
        error = ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405)
    elif exc.status_code == 404:
        error = ServiceError("NOT_FOUND", "Resource not found", 404)
    else:
        error = ServiceError("HTTP_ERROR", str(exc.detail), exc.status_code)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
