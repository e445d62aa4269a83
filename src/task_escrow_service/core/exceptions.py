"""Error taxonomy and exception handlers for consistent error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """
    Base error carrying a machine-readable code, a human-readable message,
    the HTTP status it maps to, and structured details.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error!r}, {self.message!r})"


class ValidationError(ServiceError):
    """Input out of configured bounds or otherwise malformed."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 400, details)


class InsufficientFunds(ServiceError):
    def __init__(self, account_id: str, required: str, available: str) -> None:
        super().__init__(
            "INSUFFICIENT_FUNDS",
            "Insufficient funds for escrow reservation",
            402,
            {"account_id": account_id, "required": required, "available": available},
        )


class QuotaExceeded(ServiceError):
    """Daily task-creation quota reached; reports the limit and when it resets."""

    def __init__(self, limit: int, resets_at: str) -> None:
        super().__init__(
            "QUOTA_EXCEEDED",
            f"Daily task creation limit of {limit} reached, resets at {resets_at}",
            429,
            {"limit": limit, "resets_at": resets_at},
        )
        self.limit = limit
        self.resets_at = resets_at


class NotFound(ServiceError):
    def __init__(self, error: str, message: str) -> None:
        super().__init__(error, message, 404)


class InvalidStateTransition(ServiceError):
    """Status mismatch, including races lost to a concurrent writer."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_STATE_TRANSITION", message, 409, details)


class AlreadyProcessed(ServiceError):
    """Retry of an action on an execution that already reached a terminal state."""

    def __init__(self, execution_id: str, status: str) -> None:
        super().__init__(
            "ALREADY_PROCESSED",
            f"Execution has already been {status}",
            409,
            {"execution_id": execution_id, "status": status},
        )


class ExternalVerifierTimeout(ServiceError):
    """The verifier did not answer in time; callers fall back to manual review."""

    def __init__(self, message: str = "Verifier did not respond in time") -> None:
        super().__init__("VERIFIER_TIMEOUT", message, 504)


class Unauthorized(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__("UNAUTHORIZED", message, 403)


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


async def request_validation_handler(
    _request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Map pydantic body validation failures onto the service error shape."""
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "error": "INVALID_PAYLOAD",
            "message": "Request payload failed validation",
            "details": {"errors": errors},
        },
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
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
    app.add_exception_handler(
        RequestValidationError,
        cast("ExceptionHandler", request_validation_handler),
    )
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)
