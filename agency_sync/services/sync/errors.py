"""
Error taxonomy for job failures.

Every failure that reaches the dispatcher is classified into one of the
categories below; the category prefixes the job's last_error so operators
can tell a configuration problem from a transient outage.
"""

from enum import StrEnum


class ErrorCategory(StrEnum):
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    STALE_CURSOR = "stale_cursor"
    INTERNAL = "internal"


class SyncError(Exception):
    """Base exception for sync engine failures."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, agency_id: str | None = None, provider: str | None = None):
        super().__init__(message)
        self.agency_id = agency_id
        self.provider = provider


class ConfigurationError(SyncError):
    """Missing or rejected configuration; nothing will succeed until an operator acts."""

    category = ErrorCategory.CONFIGURATION


class CredentialsMissingError(ConfigurationError):
    """No usable credential stored for the agency/provider."""


class CredentialsInvalidError(ConfigurationError):
    """The provider rejected the stored refresh token or secret."""


class AuthenticationError(SyncError):
    """Provider refused an access token that looked valid."""

    category = ErrorCategory.AUTHENTICATION


class ValidationError(SyncError):
    """Malformed job payload or out-of-range entity data."""

    category = ErrorCategory.VALIDATION


class TransientProviderError(SyncError):
    """Network failure or 5xx from a provider."""

    category = ErrorCategory.TRANSIENT
    retryable = True


class StaleCursorError(SyncError):
    """Provider declared the incremental sync cursor invalid (HTTP 410)."""

    category = ErrorCategory.STALE_CURSOR


def classify_status(status_code: int | None) -> ErrorCategory:
    """Map a provider HTTP status to an error category."""
    if status_code is None:
        return ErrorCategory.TRANSIENT
    if status_code in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status_code == 410:
        return ErrorCategory.STALE_CURSOR
    if status_code == 429 or status_code >= 500:
        return ErrorCategory.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorCategory.VALIDATION
    return ErrorCategory.INTERNAL


def truncate_message(message: str, max_length: int) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."
