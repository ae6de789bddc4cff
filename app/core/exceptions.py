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


class RateLimitedError(AppError):
    def __init__(self, limit: int, window_seconds: int):
        super().__init__(
            "Too many requests, please try again later",
            code="RATE_LIMITED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"limit": limit, "window_seconds": window_seconds},
        )


# Metering errors


class NotEntitledError(AppError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"Please subscribe to {operation} first",
            code="NOT_ENTITLED",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"operation": operation, "subscription_required": True},
        )


class LimitExceededError(AppError):
    def __init__(self, operation: str, limit: str, used: int, ceiling: int):
        self.operation = operation
        self.used = used
        self.ceiling = ceiling
        super().__init__(
            f"Usage limit exceeded for {operation}",
            code="LIMIT_EXCEEDED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"operation": operation, "limit": limit, "used": used, "ceiling": ceiling},
        )


class InsufficientCreditsError(AppError):
    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. This operation requires {required} credits.",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available},
        )


class ExternalOperationError(AppError):
    def __init__(self, upstream_status: int | None, upstream_message: str):
        self.upstream_status = upstream_status
        self.upstream_message = upstream_message
        code = upstream_status if upstream_status and upstream_status >= 400 else status.HTTP_502_BAD_GATEWAY
        super().__init__(
            upstream_message or "Error processing document",
            code="EXTERNAL_OPERATION_FAILED",
            status_code=code,
            details={"upstream_status": upstream_status, "upstream_message": upstream_message},
        )


class CommitFailedError(AppError):
    """The operation ran but could not be billed; treat it as not having happened for billing."""

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            "Billing could not be completed for this operation",
            code="COMMIT_FAILED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation, "attempts": attempts},
        )


class StoreUnavailableError(AppError):
    def __init__(self, operation: str | None = None):
        super().__init__(
            "Ledger store is temporarily unavailable",
            code="STORE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation},
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
    return ORJSONResponse(status_code=exc.status_code, content=body)


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
    from app.core.logging import get_logger
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
