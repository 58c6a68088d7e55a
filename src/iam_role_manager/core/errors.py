"""Error taxonomy for IAM Role Manager.

Identity-provider failures are mapped onto a small set of local categories
so that the reconciler, the only place deciding retry versus terminal, does
not need to know AWS error codes.
"""

from enum import Enum
from typing import List, Optional

from botocore.exceptions import ClientError


class ErrorCategory(Enum):
    """Local categories for identity-provider errors."""

    ALREADY_EXISTS = "AlreadyExists"
    NOT_FOUND = "NotFound"
    LIMIT_EXCEEDED = "LimitExceeded"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    OTHER = "Other"


_CATEGORY_BY_CODE = {
    "EntityAlreadyExists": ErrorCategory.ALREADY_EXISTS,
    "NoSuchEntity": ErrorCategory.NOT_FOUND,
    "LimitExceeded": ErrorCategory.LIMIT_EXCEEDED,
    "Throttling": ErrorCategory.LIMIT_EXCEEDED,
    "ThrottlingException": ErrorCategory.LIMIT_EXCEEDED,
    "ServiceFailure": ErrorCategory.SERVICE_UNAVAILABLE,
    "ServiceUnavailable": ErrorCategory.SERVICE_UNAVAILABLE,
}

_TRANSIENT_CATEGORIES = (
    ErrorCategory.LIMIT_EXCEEDED,
    ErrorCategory.SERVICE_UNAVAILABLE,
)


class IAMRoleManagerError(Exception):
    """Base exception for IAM Role Manager."""
    pass


class ValidationError(IAMRoleManagerError):
    """Raised when a declaration violates policy restrictions.

    Carries the field errors produced by the validation engine.
    """

    def __init__(self, message: str, field_errors: Optional[List] = None) -> None:
        super().__init__(message)
        self.field_errors = list(field_errors or [])


class OwnershipConflictError(IAMRoleManagerError):
    """Raised when an existing IAM role is owned by another namespace."""
    pass


class ProviderError(IAMRoleManagerError):
    """Raised when an AWS IAM call fails."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.OTHER,
        error_code: str = "",
    ) -> None:
        super().__init__(message)
        self.category = category
        self.error_code = error_code


class ProviderTransientError(ProviderError):
    """Rate limiting or service unavailability."""
    pass


class ProviderPermanentError(ProviderError):
    """Malformed requests and validation failures reported by AWS."""
    pass


def error_code(error: ClientError) -> str:
    """Extract the AWS error code from a botocore ClientError."""
    return error.response.get("Error", {}).get("Code", "")


def categorize(error: ClientError) -> ErrorCategory:
    """Map a botocore ClientError onto a local error category."""
    return _CATEGORY_BY_CODE.get(error_code(error), ErrorCategory.OTHER)


def classify_client_error(error: ClientError, operation: str) -> ProviderError:
    """Wrap a botocore ClientError in the matching provider error.

    Args:
        error: Error raised by boto3
        operation: Human readable operation name used in the message

    Returns:
        ProviderTransientError or ProviderPermanentError instance
    """
    category = categorize(error)
    code = error_code(error)
    message = error.response.get("Error", {}).get("Message", str(error))
    text = f"{operation} failed with {code or 'unknown error'}: {message}"

    if category in _TRANSIENT_CATEGORIES:
        return ProviderTransientError(text, category=category, error_code=code)
    return ProviderPermanentError(text, category=category, error_code=code)


def is_retryable(error: Exception) -> bool:
    """Tell whether the reconciler should schedule another attempt.

    Validation and ownership failures need a user or operator change, so
    they are not retried. Every provider error is retried on the backoff
    schedule because local state may still need correction.
    """
    if isinstance(error, (ValidationError, OwnershipConflictError)):
        return False
    return True
