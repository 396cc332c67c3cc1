"""
Error envelope and request correlation for the ADLM Studio API.

Every failure a client sees is rendered as

    {"error": {"code": "...", "message": "...", "details": {...}}}

with an X-Correlation-ID header. Unexpected exceptions become a generic
INTERNAL_ERROR; their tracebacks stay in the server log.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """An expected failure with a stable machine-readable code."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class _StandardError(AppError):
    """AppError whose code and status are fixed per subclass."""

    error_code = "INTERNAL_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code=self.error_code,
            message=message or self.default_message,
            status_code=self.http_status,
            details=details,
        )


class ValidationError(_StandardError):
    """Bad input or an invalid state transition (400)."""
    error_code = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthenticationError(_StandardError):
    """Missing, expired or revoked credentials (401)."""
    error_code = "AUTHENTICATION_ERROR"
    http_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class PermissionDeniedError(_StandardError):
    """Role or ownership check failed (403)."""
    error_code = "PERMISSION_DENIED"
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "Permission denied"


class ConflictError(_StandardError):
    """Duplicate key or a competing write (409)."""
    error_code = "CONFLICT"
    http_status = status.HTTP_409_CONFLICT
    default_message = "Conflict"


class PaymentGatewayError(_StandardError):
    """Paystack failed or answered nonsense (502)."""
    error_code = "PAYMENT_GATEWAY_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment provider unavailable"


class ServiceUnavailableError(_StandardError):
    """A required collaborator is not configured (503)."""
    error_code = "SERVICE_UNAVAILABLE"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"


class NotFoundError(AppError):
    """Unknown resource (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(code="NOT_FOUND", message=message, status_code=status.HTTP_404_NOT_FOUND)


class RateLimitError(AppError):
    """Too many requests (429); rendered with Retry-After."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"retry_after_seconds": retry_after} if retry_after else None,
        )


def correlation_id_for(request: Request) -> str:
    """Upstream header, then the id the middleware stored, then a new uuid4."""
    return (
        request.headers.get(CORRELATION_HEADER)
        or getattr(request.state, "correlation_id", None)
        or str(uuid.uuid4())
    )


def _render(exc: AppError, correlation_id: str) -> JSONResponse:
    headers = {CORRELATION_HEADER: correlation_id}
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Expected failures are logged at WARNING, without a traceback."""
    correlation_id = correlation_id_for(request)
    logger.warning(
        "Application error",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return _render(exc, correlation_id)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Tags every response with a correlation id; unhandled errors become 500s."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = correlation_id_for(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except AppError as e:
            return await app_error_handler(request, e)
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            internal = _StandardError(details={"correlation_id": correlation_id})
            return _render(internal, correlation_id)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def register_error_handlers(app: FastAPI) -> None:
    """Install the AppError handler and the correlation/500 middleware."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_middleware(ErrorHandlerMiddleware)
