from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class AccountNotFoundError(AppError):
    """Ledger target does not exist. Retrying will not help."""

    def __init__(self, account_id: Any = None):
        details = {"account_id": str(account_id)} if account_id is not None else None
        super().__init__(
            "Account not found",
            code="ACCOUNT_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class InsufficientCreditsError(AppError):
    def __init__(self, balance: int, required: int):
        super().__init__(
            "Insufficient credits",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"balance": balance, "required": required},
        )


class StoreUnavailableError(AppError):
    """Store could not be reached; the outcome of a write is unknown and may be retried with the same key."""

    def __init__(self, message: str = "Credit store unavailable"):
        super().__init__(message, code="STORE_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class RateLimitedError(AppError):
    def __init__(self, retry_after: int):
        super().__init__(
            "Too many requests",
            code="RATE_LIMITED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"retry_after": retry_after},
        )


class PayloadTooLargeError(AppError):
    def __init__(self, message: str = "Payload too large. Please reduce image size or quality before retrying."):
        super().__init__(message, code="PAYLOAD_TOO_LARGE", status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)


class UpstreamError(AppError):
    """An external provider (AI model, PayPal) failed or returned an unusable response."""

    def __init__(self, message: str, provider: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="UPSTREAM_ERROR",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"provider": provider, **(details or {})},
        )


class GenerationFailedError(AppError):
    def __init__(self, message: str, balance: int):
        super().__init__(
            message,
            code="GENERATION_FAILED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"refunded": True, "balance": balance},
        )


class RefundFailedError(AppError):
    def __init__(self, request_id: str):
        super().__init__(
            "Generation failed and your credit could not be refunded. Please contact support.",
            code="CHARGED_NOT_REFUNDED",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"request_id": request_id},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return ORJSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from pawdia.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
