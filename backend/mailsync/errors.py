"""Error taxonomy for the sync engine: typed provider/store errors plus a message-based fallback classifier."""
from enum import Enum
from typing import Optional, Union


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TEMPORARY = "temporary"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    DATA_CONFLICT = "data_conflict"
    PROCESSING_ERROR = "processing_error"
    UNKNOWN = "unknown"
    CIRCUIT_OPEN = "circuit_open"


class SyncError(Exception):
    """Base class for errors raised by the provider client and the store layer."""
    category = ErrorCategory.PROCESSING_ERROR


class ProviderRateLimitError(SyncError):
    category = ErrorCategory.RATE_LIMIT

    def __init__(self, message: str = "Provider rate limit exceeded", retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderAuthError(SyncError):
    """Credential rejected (401). Eligible for one token refresh."""
    category = ErrorCategory.AUTH


class ProviderPermissionError(SyncError):
    """Access revoked or refresh failed. The mailbox needs reconnection."""
    category = ErrorCategory.PERMISSION


class ProviderNotFoundError(SyncError):
    category = ErrorCategory.NOT_FOUND


class ProviderTemporaryError(SyncError):
    category = ErrorCategory.TEMPORARY


class ProviderNetworkError(SyncError):
    category = ErrorCategory.NETWORK


class InvocationTimeoutError(SyncError):
    """Raised when the invocation's wall-clock budget runs out mid-job."""
    category = ErrorCategory.TIMEOUT


class DataConflictError(SyncError):
    category = ErrorCategory.DATA_CONFLICT


# Substring fallback for errors that arrive as opaque text. Order matters.
_MESSAGE_PATTERNS = (
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "too many requests", "429")),
    (ErrorCategory.NETWORK, ("network", "connection", "dns")),
    (ErrorCategory.TEMPORARY, ("temporary", "unavailable", "503", "502")),
    (ErrorCategory.AUTH, ("auth", "token", "401", "403")),
    (ErrorCategory.PERMISSION, ("permission", "access", "forbidden")),
    (ErrorCategory.NOT_FOUND, ("not found", "404")),
    (ErrorCategory.DATA_CONFLICT, ("duplicate", "conflict", "409")),
)


def categorize_error(error: Union[BaseException, str, None]) -> ErrorCategory:
    """
    Map an exception or an error message to an ErrorCategory.
    Typed SyncError subclasses win; anything else is classified by substring.
    """
    if isinstance(error, SyncError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK
    message = str(error or "").strip().lower()
    if not message:
        return ErrorCategory.UNKNOWN
    for category, needles in _MESSAGE_PATTERNS:
        if any(n in message for n in needles):
            return category
    return ErrorCategory.PROCESSING_ERROR


def retry_delay_seconds(
    category: Union[ErrorCategory, str],
    attempt: int,
    circuit_remaining_seconds: Optional[int] = None,
) -> int:
    """Backoff before the next attempt, by category and 1-based attempt number."""
    category = ErrorCategory(category)
    attempt = max(1, int(attempt))
    step = min(attempt - 1, 2)
    if category == ErrorCategory.RATE_LIMIT:
        return 5 * (3 ** step)
    if category in (ErrorCategory.NETWORK, ErrorCategory.TEMPORARY):
        return 2 * (2 ** step)
    if category == ErrorCategory.TIMEOUT:
        return 3 * min(attempt, 3)
    if category == ErrorCategory.AUTH:
        return 2 if attempt == 1 else 5
    if category == ErrorCategory.CIRCUIT_OPEN and circuit_remaining_seconds is not None:
        return max(1, int(circuit_remaining_seconds))
    return 1 * (2 ** step)


def should_retry(category: Union[ErrorCategory, str], attempts: int, max_attempts: int) -> bool:
    category = ErrorCategory(category)
    if category in (ErrorCategory.PERMISSION, ErrorCategory.NOT_FOUND):
        return False
    if category == ErrorCategory.AUTH:
        return attempts < min(2, max_attempts)
    if category == ErrorCategory.RATE_LIMIT:
        # never dead-lettered on the first throttle
        return attempts < max(2, max_attempts)
    return attempts < max_attempts
