from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("phoneguard.errors")


class AppError(Exception):
    """Base class for every expected failure of the auth flow.

    ``code`` is the stable machine-readable identifier, ``detail`` carries
    extra fields that are rendered into the ``error`` object of the response.
    """

    code: str = "app_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None, **detail: Any):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def error_body(self) -> dict:
        body: dict = {"code": self.code}
        body.update(self.detail)
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, detail={self.detail!r})"


class ValidationFailed(AppError):
    code = "validation_failed"
    default_message = "Validation failed"


class RateLimited(AppError):
    code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please try again later."


class BlockedTemporary(AppError):
    code = "blocked_temporary"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Account is temporarily blocked. Try again after 24 hours."


class BlockedPermanent(AppError):
    code = "blocked_permanent"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Account is blocked due to excessive daily attempts. Contact admin for unblock."


class OtpAlreadyActive(AppError):
    code = "otp_already_active"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, remaining_seconds: int):
        super().__init__(
            f"Please wait {remaining_seconds} seconds before requesting new OTP",
            remainingSeconds=remaining_seconds,
        )
        self.remaining_seconds = remaining_seconds


class OtpNotFound(AppError):
    code = "otp_not_found"
    default_message = "OTP expired or not found. Please request new OTP."


class OtpExpired(AppError):
    code = "otp_expired"
    default_message = "OTP expired. Please request new OTP."


class OtpMismatch(AppError):
    code = "otp_mismatch"

    def __init__(self, attempts_remaining: int):
        super().__init__(
            f"Invalid OTP. {attempts_remaining} attempts remaining.",
            attemptsRemaining=attempts_remaining,
        )
        self.attempts_remaining = attempts_remaining


class OtpAttemptsExceeded(AppError):
    code = "otp_attempts_exceeded"
    default_message = "Too many invalid attempts. Please request new OTP."


class SuspiciousActivity(AppError):
    code = "suspicious_activity"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Request blocked due to suspicious activity"


class InternalError(AppError):
    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"


def failure_body(message: str, error: Any = None, data: Any = None) -> dict:
    body: dict = {"success": False, "message": message}
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    return body


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=failure_body(exc.message, exc.error_body()))


async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    error = None if isinstance(detail, str) else detail
    return JSONResponse(
        status_code=exc.status_code,
        content=failure_body(message, error),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        messages.append(f"{loc}: {msg}" if loc else msg)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=failure_body(ValidationFailed.default_message, messages),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    from .config import settings

    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error: dict = {"code": InternalError.code}
    if settings.DEV_MODE:
        error["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=failure_body(InternalError.default_message, error),
    )
