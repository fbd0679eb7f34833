"""
Utility modules for the ThreadPosts backend.
"""

from .errors import (
    handle_exception,
    raise_forbidden,
    raise_unauthorized,
    AppError,
    ErrorCodes,
    NotFoundError,
    AlreadyExistsError,
    InvalidReferralCodeError,
    ReferralCodeTakenError,
    PreconditionFailedError,
    OnboardingRequiredError,
    BelowThresholdError,
    InvalidPayoutTransitionError,
    ExternalServiceError,
    TransientError,
)

from .retry import (
    with_retry,
    is_transient_error,
)

__all__ = [
    # Error handling utilities
    "handle_exception",
    "raise_forbidden",
    "raise_unauthorized",
    "AppError",
    "ErrorCodes",
    # Ledger errors
    "NotFoundError",
    "AlreadyExistsError",
    "InvalidReferralCodeError",
    "ReferralCodeTakenError",
    "PreconditionFailedError",
    "OnboardingRequiredError",
    "BelowThresholdError",
    "InvalidPayoutTransitionError",
    "ExternalServiceError",
    "TransientError",
    # Retry utilities
    "with_retry",
    "is_transient_error",
]
