"""Service error taxonomy and FastAPI exception handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_settlement_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """
    Business error with a machine-readable code.

    Rendered to clients as ``{"error": ..., "message": ..., "details": ...}``.
    """

    default_status = 400

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status
        self.details: dict[str, Any] = details if details is not None else {}


class ValidationError(ServiceError):
    """Malformed input. Rejected synchronously, never retried."""

    default_status = 400


class ForbiddenError(ServiceError):
    """Caller is not a party allowed to perform the action."""

    default_status = 403


class NotFoundError(ServiceError):
    """Referenced record does not exist."""

    default_status = 404


class ConflictError(ServiceError):
    """Lock contention or a state that does not permit the action."""

    default_status = 409


class ExpiredError(ServiceError):
    """Action attempted after its deadline. Recoverable by re-reading state."""

    default_status = 410


class GatewayError(ServiceError):
    """
    Payment gateway failure.

    ``transient`` errors (network, timeout, 5xx) are safe to retry with the
    same reference; permanent ones (declined) fail the payment intent.
    """

    default_status = 502

    def __init__(
        self,
        error: str,
        message: str,
        *,
        transient: bool,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error, message, status_code, details)
        self.transient = transient


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
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404/405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
