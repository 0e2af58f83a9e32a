"""
Error types and the error-rendering middleware for the guard.

Every error a client can see is an AppError rendered as

    {"error": {"code": ..., "message": ..., "details": {...}}}

with the request's X-Correlation-ID echoed back. Anything else that escapes
a route becomes a generic 500 carrying only the correlation id; the
exception itself (stack, crypto error text, SQL) stays in the server log.

Status codes in use:
- 400 validation / wrong content type
- 401 missing or invalid credentials
- 403 disallowed origin
- 423 account locked after failed logins
- 429 rate limited
- 500 misconfiguration or unexpected failure
- 503 guard dependencies not wired
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """
    Base for errors that are safe to show to a client.

    Subclasses set ``default_code``, ``default_status`` and
    ``default_message``; AppError itself can be raised directly with an ad-hoc
    code for one-off route errors.
    """

    default_code = "INTERNAL_ERROR"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.status_code = status_code or self.default_status
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return _error_body(self.code, self.message, self.details)


class ValidationError(AppError):
    default_code = "VALIDATION_ERROR"
    default_status = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class AuthenticationError(AppError):
    default_code = "AUTHENTICATION_ERROR"
    default_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class PermissionDeniedError(AppError):
    default_code = "PERMISSION_DENIED"
    default_status = status.HTTP_403_FORBIDDEN
    default_message = "Permission denied"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class AccountLockedError(AppError):
    """Raised by the login-attempt tracker while a lockout is in force."""

    default_code = "ACCOUNT_LOCKED"
    default_status = status.HTTP_423_LOCKED
    default_message = "Account temporarily locked due to multiple failed login attempts"

    def __init__(self, minutes_remaining: int):
        self.minutes_remaining = minutes_remaining
        super().__init__(details={"locked_minutes": minutes_remaining})


class RateLimitError(AppError):
    default_code = "RATE_LIMIT_EXCEEDED"
    default_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        details = {"retry_after_seconds": retry_after} if retry_after else None
        super().__init__(message=message, details=details)


class ServiceUnavailableError(AppError):
    default_code = "SERVICE_UNAVAILABLE"
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message=message)


class ConfigurationError(AppError):
    """
    Missing or unsafe security configuration.

    Raised while building settings, the vault or the cipher; in production
    this stops the process from booting.
    """

    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, details=details)


def _error_body(code: str, message: str, details: Optional[dict[str, Any]] = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Incoming X-Correlation-ID, else the one already on request.state, else a new one."""
    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        return correlation_id
    return getattr(request.state, "correlation_id", None) or generate_correlation_id()


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Renders AppError / HTTPException / anything else into the standard shape."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id
        log_context = {
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
        except AppError as e:
            logger.warning(
                "Application error",
                extra={**log_context, "error_code": e.code, "status_code": e.status_code},
            )
            return self._respond(e.status_code, e.to_dict(), correlation_id)
        except HTTPException as e:
            logger.warning("HTTP exception", extra={**log_context, "status_code": e.status_code})
            return self._respond(e.status_code, _error_body("HTTP_ERROR", str(e.detail)), correlation_id)
        except Exception as e:
            logger.exception("Unhandled exception", extra={**log_context, "error_type": type(e).__name__})
            body = _error_body(
                AppError.default_code,
                AppError.default_message,
                {"correlation_id": correlation_id},
            )
            return self._respond(status.HTTP_500_INTERNAL_SERVER_ERROR, body, correlation_id)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @staticmethod
    def _respond(status_code: int, body: dict, correlation_id: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content=body, headers={CORRELATION_HEADER: correlation_id})
