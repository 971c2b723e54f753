import time
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from genqueue.config.logging import add_request_context, get_logger

logger = get_logger(__name__)


class GenQueueException(Exception):
    """Base exception for the job queue and task engine."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(GenQueueException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(GenQueueException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class StorageError(GenQueueException):
    """Raised when the backing store rejects a read or write."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class InvalidTransitionError(GenQueueException):
    """Raised when an event is not allowed from a task's current status."""

    def __init__(
        self,
        current_status: str,
        event: str,
        details: dict[str, Any] | None = None,
    ):
        self.current_status = current_status
        self.event = event
        super().__init__(
            f"Cannot apply '{event}' to a task in status '{current_status}'",
            status.HTTP_409_CONFLICT,
            {"current_status": current_status, "event": event, **(details or {})},
        )


class StaleVersionError(GenQueueException):
    """Raised when a compare-and-swap write loses against a newer version."""

    def __init__(self, record_id: str, expected_version: int):
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"Record {record_id} changed since version {expected_version}",
            status.HTTP_409_CONFLICT,
            {"record_id": record_id, "expected_version": expected_version},
        )


class HandlerNotFoundError(GenQueueException):
    """Raised when a job type has no registered handler."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(
            f"No handler registered for job type: {job_type}",
            details={"job_type": job_type},
        )


class JobTimeoutError(GenQueueException):
    """Raised when a handler does not return within its wall-clock bound."""

    def __init__(self, job_id: str, timeout_s: float):
        self.job_id = job_id
        self.timeout_s = timeout_s
        super().__init__(
            f"Job execution timed out after {timeout_s}s",
            status.HTTP_504_GATEWAY_TIMEOUT,
            {"job_id": job_id, "timeout_s": timeout_s},
        )


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def genqueue_exception_handler(
    request: Request, exc: GenQueueException
) -> JSONResponse:
    """Handle application specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        # Reuse the caller's correlation ID when it sent one
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.debug(
            "Request finished",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
