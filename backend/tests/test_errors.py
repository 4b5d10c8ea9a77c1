"""Error categorization, backoff table and retry policy."""
import pytest

from mailsync.errors import (
    ErrorCategory,
    InvocationTimeoutError,
    ProviderAuthError,
    ProviderPermissionError,
    ProviderRateLimitError,
    categorize_error,
    retry_delay_seconds,
    should_retry,
)


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Request timed out after 30s", ErrorCategory.TIMEOUT),
        ("HTTP 429 Too Many Requests", ErrorCategory.RATE_LIMIT),
        ("connection reset by peer", ErrorCategory.NETWORK),
        ("Service temporarily unavailable", ErrorCategory.TEMPORARY),
        ("401 invalid token", ErrorCategory.AUTH),
        ("permission denied for mailbox", ErrorCategory.PERMISSION),
        ("message not found", ErrorCategory.NOT_FOUND),
        ("duplicate key value violates unique constraint", ErrorCategory.DATA_CONFLICT),
        ("something odd happened", ErrorCategory.PROCESSING_ERROR),
    ],
)
def test_categorize_error_by_message(message, expected):
    assert categorize_error(message) == expected


def test_timeout_wins_over_later_patterns():
    # contains both "timeout" and "connection"
    assert categorize_error("connection timeout") == ErrorCategory.TIMEOUT


def test_typed_errors_use_their_category():
    assert categorize_error(ProviderRateLimitError("slow down", retry_after=7)) == ErrorCategory.RATE_LIMIT
    assert categorize_error(ProviderPermissionError("revoked")) == ErrorCategory.PERMISSION
    assert categorize_error(InvocationTimeoutError("budget")) == ErrorCategory.TIMEOUT
    # Typed category beats misleading text
    assert categorize_error(ProviderAuthError("request timed out")) == ErrorCategory.AUTH


def test_builtin_exceptions_and_empty_input():
    assert categorize_error(TimeoutError()) == ErrorCategory.TIMEOUT
    assert categorize_error(ConnectionResetError()) == ErrorCategory.NETWORK
    assert categorize_error(None) == ErrorCategory.UNKNOWN
    assert categorize_error("") == ErrorCategory.UNKNOWN


def test_retry_delays_follow_category_table():
    assert [retry_delay_seconds("rate_limit", a) for a in (1, 2, 3, 4)] == [5, 15, 45, 45]
    assert [retry_delay_seconds("network", a) for a in (1, 2, 3, 4)] == [2, 4, 8, 8]
    assert [retry_delay_seconds("temporary", a) for a in (1, 2, 3)] == [2, 4, 8]
    assert [retry_delay_seconds("timeout", a) for a in (1, 2, 3, 5)] == [3, 6, 9, 9]
    assert [retry_delay_seconds("auth", a) for a in (1, 2, 3)] == [2, 5, 5]
    assert [retry_delay_seconds("processing_error", a) for a in (1, 2, 3)] == [1, 2, 4]
    assert retry_delay_seconds(ErrorCategory.CIRCUIT_OPEN, 1, circuit_remaining_seconds=120) == 120


def test_should_retry_policy():
    assert should_retry("permission", 1, 3) is False
    assert should_retry("not_found", 1, 3) is False
    assert should_retry("auth", 1, 3) is True
    assert should_retry("auth", 2, 3) is False
    assert should_retry("network", 2, 3) is True
    assert should_retry("network", 3, 3) is False
    # A single throttle never exhausts a job, even with max_attempts=1
    assert should_retry("rate_limit", 1, 1) is True
    assert should_retry("rate_limit", 2, 1) is False
