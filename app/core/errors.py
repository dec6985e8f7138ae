"""
Error Handling
==============

Standardized error codes, domain exceptions and exception handlers.
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_NOT_AUTHENTICATED = "AUTH_001"
    AUTH_INVALID_TOKEN = "AUTH_002"

    # Webhooks (WEBHOOK_001 - WEBHOOK_010)
    WEBHOOK_MISSING_SIGNATURE = "WEBHOOK_001"
    WEBHOOK_INVALID_SIGNATURE = "WEBHOOK_002"
    WEBHOOK_NOT_CONFIGURED = "WEBHOOK_003"
    WEBHOOK_INVALID_PAYLOAD = "WEBHOOK_004"
    WEBHOOK_UNAUTHORIZED = "WEBHOOK_005"

    # Subscription (SUB_001 - SUB_010)
    SUB_UNMAPPED_PRICE = "SUB_001"
    SUB_NO_ACTIVE_SUB = "SUB_002"
    SUB_INVALID_PROVIDER = "SUB_003"
    SUB_PERSISTENCE_FAILED = "SUB_004"
    SUB_USER_NOT_RESOLVED = "SUB_005"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Custom Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_NOT_AUTHENTICATED,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class MissingSignatureError(AuthenticationError):
    """Webhook delivered without a signature header."""

    def __init__(self, message: str = "Missing webhook signature"):
        super().__init__(code=ErrorCodes.WEBHOOK_MISSING_SIGNATURE, message=message)


class InvalidSignatureError(AppException):
    """Webhook signature did not verify against the shared secret."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.WEBHOOK_INVALID_SIGNATURE,
            message=message,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class NoActiveSubscriptionError(NotFoundError):
    """The verification service confirmed the user holds no active entitlement."""

    def __init__(self, message: str = "No active subscription found"):
        super().__init__(code=ErrorCodes.SUB_NO_ACTIVE_SUB, message=message)


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.VALIDATION_ERROR,
            message=message,
            field=field,
            **extra,
        )


class UnmappedTierError(AppException):
    """
    A web event referenced a price with no configured tier.

    Returned as a 5xx so the payment provider retries after the price map
    is fixed; no write is performed.
    """

    def __init__(self, price_ref: Optional[str], known_price_refs: list[str]):
        self.price_ref = price_ref
        self.known_price_refs = known_price_refs
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.SUB_UNMAPPED_PRICE,
            message=f"Unknown price reference: {price_ref}",
            price_ref=price_ref,
            known_price_refs=known_price_refs,
            retryable=True,
        )


class PersistenceError(AppException):
    """One or both entitlement writes failed."""

    def __init__(self, write_outcome: str, message: str = "Failed to persist subscription state"):
        self.write_outcome = write_outcome
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.SUB_PERSISTENCE_FAILED,
            message=message,
            write_outcome=write_outcome,
        )


# =============================================================================
# Domain Exceptions (not HTTP-facing, translated by routers)
# =============================================================================

class UserResolutionError(Exception):
    """No canonical user could be found for a provider event."""

    def __init__(self, message: str, customer_ref: Optional[str] = None):
        super().__init__(message)
        self.customer_ref = customer_ref


class VerificationServiceError(Exception):
    """The entitlement verification service could not give an answer."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException. 5xx responses ask the provider to retry, so they are logged."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Handler for request validation errors.

    Malformed bodies are a client error (400) for every endpoint in this
    service.
    """
    errors: list[Any] = []
    if hasattr(exc, "errors"):
        errors = exc.errors()

    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
                "details": [
                    {"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")}
                    for e in errors
                ],
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
