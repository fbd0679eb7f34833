"""
Centralized error handling utilities for the ThreadPosts API.

Ledger operations raise AppError subclasses; routers turn them into
consistent HTTP responses with handle_exception().
"""

import logging
from typing import Optional, Dict, Any
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with structured data."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ErrorCodes:
    """Standard error codes for API responses."""
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


# =============================================================================
# LEDGER ERRORS
# =============================================================================

class NotFoundError(AppError):
    def __init__(self, resource: str, resource_id: Optional[str] = None):
        super().__init__(
            f"{resource} not found",
            code=ErrorCodes.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_id": resource_id} if resource_id else None,
        )


class AlreadyExistsError(AppError):
    def __init__(self, message: str = "User is already an affiliate"):
        super().__init__(message, code=ErrorCodes.CONFLICT, status_code=status.HTTP_409_CONFLICT)


class InvalidReferralCodeError(AppError):
    def __init__(self, message: str):
        super().__init__(
            message,
            code=ErrorCodes.VALIDATION_ERROR,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"field": "referral_code"},
        )


class ReferralCodeTakenError(AppError):
    def __init__(self, code: str):
        super().__init__(
            "This referral code is already taken",
            code=ErrorCodes.CONFLICT,
            status_code=status.HTTP_409_CONFLICT,
            details={"referral_code": code},
        )


class PreconditionFailedError(AppError):
    """A payout (or payout transition) was rejected; the message names the missing condition."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(
            message,
            code=ErrorCodes.PRECONDITION_FAILED,
            status_code=status_code,
            details=details,
        )


class OnboardingRequiredError(PreconditionFailedError):
    def __init__(self):
        super().__init__("Please complete Stripe Connect onboarding first")


class BelowThresholdError(PreconditionFailedError):
    def __init__(self, pending_balance, threshold):
        super().__init__(
            f"Minimum payout threshold is ${threshold:.2f}. "
            f"Current balance: ${pending_balance:.2f}",
            details={
                "pending_balance": str(pending_balance),
                "min_payout_threshold": str(threshold),
            },
        )


class InvalidPayoutTransitionError(PreconditionFailedError):
    def __init__(self, payout_id: str, current_status: Optional[str]):
        super().__init__(
            f"Payout is already {current_status}",
            details={"payout_id": payout_id, "status": current_status},
            status_code=status.HTTP_409_CONFLICT,
        )


class ExternalServiceError(AppError):
    """A payments platform call failed; nothing was committed."""

    def __init__(self, message: str, service: str = "stripe"):
        super().__init__(
            message,
            code=ErrorCodes.EXTERNAL_SERVICE_ERROR,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"service": service},
        )


class TransientError(AppError):
    def __init__(self, message: str):
        super().__init__(
            message,
            code=ErrorCodes.SERVICE_UNAVAILABLE,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


# =============================================================================
# HTTP MAPPING
# =============================================================================

def handle_exception(
    error: Exception,
    operation: str,
    *,
    user_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    log_level: str = "error"
) -> HTTPException:
    """
    Handle exceptions and return appropriate HTTPException.

    Logs the error with context, preserves HTTPExceptions, surfaces AppError
    messages verbatim and hides everything else behind a generic message.

    Example:
        try:
            ...
        except Exception as e:
            raise handle_exception(e, "request_payout", user_id=user_id)
    """
    context = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if user_id:
        context["user_id"] = user_id
    if resource_id:
        context["resource_id"] = resource_id

    # Expected rejections are not server errors
    if isinstance(error, AppError) and error.status_code < 500:
        log_level = "info"

    log_message = f"Error in {operation}: {error}"
    if log_level == "warning":
        logger.warning(log_message, extra=context, exc_info=True)
    elif log_level == "info":
        logger.info(log_message, extra=context)
    else:
        logger.error(log_message, extra=context, exc_info=True)

    if isinstance(error, HTTPException):
        return error

    if isinstance(error, AppError):
        return HTTPException(
            status_code=error.status_code,
            detail={
                "error": error.code,
                "message": error.message,
                "details": error.details
            }
        )

    error_mapping = _get_error_mapping(error)

    return HTTPException(
        status_code=error_mapping["status_code"],
        detail={
            "error": error_mapping["code"],
            "message": error_mapping["message"]
        }
    )


def _get_error_mapping(error: Exception) -> Dict[str, Any]:
    """Map exception types to user-friendly error responses."""
    error_type = type(error).__name__
    error_str = str(error).lower()

    if "connection" in error_str or "timeout" in error_str:
        return {
            "status_code": status.HTTP_503_SERVICE_UNAVAILABLE,
            "code": ErrorCodes.SERVICE_UNAVAILABLE,
            "message": "Service temporarily unavailable. Please try again."
        }

    if error_type in ("ValidationError", "ValueError", "TypeError"):
        return {
            "status_code": status.HTTP_400_BAD_REQUEST,
            "code": ErrorCodes.VALIDATION_ERROR,
            "message": "Invalid request data. Please check your input."
        }

    return {
        "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "code": ErrorCodes.INTERNAL_ERROR,
        "message": "An unexpected error occurred. Please try again."
    }


def raise_forbidden(message: str = "You don't have permission to perform this action") -> HTTPException:
    """Raise a standardized 403 Forbidden error."""
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": ErrorCodes.FORBIDDEN,
            "message": message
        }
    )


def raise_unauthorized(message: str = "Not authenticated") -> HTTPException:
    """Raise a standardized 401 Unauthorized error."""
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": ErrorCodes.UNAUTHORIZED,
            "message": message
        }
    )
