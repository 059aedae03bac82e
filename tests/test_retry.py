"""
Tests for WedList Retry Logic with Exponential Backoff.

Tests:
- RetryConfig configuration
- RetryStats statistics tracking
- calculate_delay function
- is_retryable_exception, including wrapped ledger errors
- retry_call function
"""

import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from gift_errors import AlreadyVerified, LedgerReadFailed
from retry import (
    RetryableError,
    RetryConfig,
    RetryStats,
    calculate_delay,
    is_retryable_exception,
    retry_call,
)


@pytest.fixture(autouse=True)
def no_sleep():
    """Retries never actually wait in tests."""
    with patch("retry.time.sleep") as sleep:
        yield sleep


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_config(self):
        """Test default configuration values."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay == 0.5
        assert config.max_delay == 10.0
        assert config.exponential_base == 2.0
        assert config.jitter == 0.1

    def test_retryable_exceptions(self):
        """Test default retryable exceptions."""
        config = RetryConfig()
        assert ConnectionError in config.retryable_exceptions
        assert TimeoutError in config.retryable_exceptions
        assert OSError in config.retryable_exceptions

    @patch.dict(os.environ, {
        "RETRY_MAX_ATTEMPTS": "5",
        "RETRY_BASE_DELAY": "2.5",
        "RETRY_MAX_DELAY": "120.0",
        "RETRY_EXPONENTIAL_BASE": "3.0",
        "RETRY_JITTER": "0.15",
    })
    def test_from_env(self):
        """Test creating config from environment variables."""
        config = RetryConfig.from_env()
        assert config.max_retries == 5
        assert config.base_delay == 2.5
        assert config.max_delay == 120.0
        assert config.exponential_base == 3.0
        assert config.jitter == 0.15


class TestRetryStats:
    """Tests for RetryStats dataclass."""

    def test_record_failure(self):
        stats = RetryStats()
        stats.record_attempt(success=False, error="Connection refused")
        assert stats.attempts == 1
        assert stats.failures == 1
        assert stats.last_error == "Connection refused"

    def test_multiple_attempts(self):
        """Test recording multiple attempts."""
        stats = RetryStats()
        stats.record_attempt(success=False, delay=1.0, error="Error 1")
        stats.record_attempt(success=False, delay=2.0, error="Error 2")
        stats.record_attempt(success=True)

        assert stats.attempts == 3
        assert stats.successes == 1
        assert stats.failures == 2
        assert stats.retries == 2
        assert stats.total_delay == 3.0


class TestCalculateDelay:
    """Tests for calculate_delay function."""

    def test_exponential_backoff(self):
        """Test exponential backoff calculation."""
        delays = [
            calculate_delay(attempt, base_delay=0.5, exponential_base=2.0, max_delay=10.0, jitter=0.0)
            for attempt in range(4)
        ]

        assert delays == [0.5, 1.0, 2.0, 4.0]

    def test_max_delay_cap(self):
        """Test delay is capped at max_delay."""
        delay = calculate_delay(
            attempt=10,
            base_delay=1.0,
            exponential_base=2.0,
            max_delay=10.0,
            jitter=0.0,
        )
        assert delay == 10.0

    def test_jitter_range(self):
        """Test jitter stays within expected range."""
        base = 10.0
        jitter = 0.2

        for _ in range(100):
            delay = calculate_delay(0, base, 2.0, 60.0, jitter)
            assert base * (1 - jitter) <= delay <= base * (1 + jitter)


class TestIsRetryableException:
    """Tests for is_retryable_exception function."""

    def test_explicit_retryable_error(self):
        assert is_retryable_exception(RetryableError("HTTP 503"), (ValueError,)) is True

    def test_value_error_not_retryable(self):
        result = is_retryable_exception(
            ValueError("Invalid value"),
            retryable_types=(ConnectionError, TimeoutError),
        )
        assert result is False

    def test_ledger_read_wrapping_transport_failure(self):
        """A read failure caused by a dropped connection is retried."""
        error = LedgerReadFailed("Ledger unreachable", cause=ConnectionError("reset"))

        assert is_retryable_exception(error, RetryConfig().retryable_exceptions) is True

    def test_ledger_read_for_transient_status(self):
        """A 503 from the gateway is reported with a RetryableError cause."""
        error = LedgerReadFailed("Service unavailable", cause=RetryableError("HTTP 503"))

        assert is_retryable_exception(error, RetryConfig().retryable_exceptions) is True

    def test_cause_chain_is_followed(self):
        inner = LedgerReadFailed("Ledger unreachable", cause=ConnectionError("reset"))
        outer = ValueError("wrapper")
        outer.__cause__ = inner

        assert is_retryable_exception(outer, RetryConfig().retryable_exceptions) is True

    def test_ledger_read_without_transport_cause(self):
        error = LedgerReadFailed("Business data does not exist")

        assert is_retryable_exception(error, RetryConfig().retryable_exceptions) is False

    def test_already_verified_not_retryable(self):
        assert is_retryable_exception(AlreadyVerified("gift-1"), RetryConfig().retryable_exceptions) is False


class TestRetryCall:
    """Tests for retry_call function."""

    def test_retry_on_failure(self):
        call_count = 0

        def flaky_func():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionError("Test")
            return "success"

        stats = RetryStats()
        result = retry_call(flaky_func, config=RetryConfig(max_retries=3, base_delay=0.01), stats=stats)

        assert result == "success"
        assert call_count == 2
        assert stats.retries == 1
        assert stats.successes == 1

    def test_with_args_and_kwargs(self):
        """Test calling function with arguments."""
        def add_func(a, b, multiplier=1):
            return (a + b) * multiplier

        assert retry_call(add_func, args=(2, 3), kwargs={"multiplier": 2}) == 10

    def test_zero_retries_calls_once(self):
        calls = []

        def fails():
            calls.append(1)
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            retry_call(fails, config=RetryConfig(max_retries=0))

        assert len(calls) == 1

    def test_wrapped_ledger_error_is_reraised_unchanged(self):
        error = LedgerReadFailed("Ledger unreachable", cause=TimeoutError("slow"))

        def fails():
            raise error

        with pytest.raises(LedgerReadFailed) as exc_info:
            retry_call(fails, config=RetryConfig(max_retries=1, base_delay=0))

        assert exc_info.value is error
