"""
WedList - Retry Logic with Exponential Backoff

Retry utilities for read-only ledger and oracle queries.

Signed ledger writes and proof submissions are never passed through here:
a proof consumes its handle on the ledger, so resubmitting it can only be
rejected.

Usage:
    from retry import retry_call, RetryConfig

    result = retry_call(reader.get_all_business_ids, config=RetryConfig())

Environment Variables:
    RETRY_MAX_ATTEMPTS=3
    RETRY_BASE_DELAY=0.5
    RETRY_MAX_DELAY=10.0
    RETRY_EXPONENTIAL_BASE=2.0
    RETRY_JITTER=0.1
"""

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Type

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """A transient failure, such as a 503 from the ledger gateway."""
    pass


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    max_delay: float = 10.0

    base_delay: float = 0.5
    exponential_base: float = 2.0
    jitter: float = 0.1  # Random jitter factor (0.0 to 1.0)

    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    log_retries: bool = True
    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "0.5")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "10.0")),
            exponential_base=float(os.getenv("RETRY_EXPONENTIAL_BASE", "2.0")),
            jitter=float(os.getenv("RETRY_JITTER", "0.1")),
        )


@dataclass
class RetryStats:
    """Statistics from retry operations."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    total_delay: float = 0.0
    last_error: str | None = None

    def record_attempt(self, success: bool, delay: float = 0.0, error: str | None = None):
        """Record an attempt."""
        self.attempts += 1

        if success:
            self.successes += 1
        else:
            self.failures += 1
            self.last_error = error

        if delay > 0:
            self.retries += 1
            self.total_delay += delay


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Multiplier for exponential growth
        max_delay: Maximum delay cap
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)

    return max(0, delay)


def is_retryable_exception(
    exception: BaseException,
    retryable_types: tuple[Type[BaseException], ...]
) -> bool:
    """
    Check if an exception should trigger a retry.

    Registry errors wrap transport failures, so the cause chain is
    inspected as well.
    """
    if isinstance(exception, RetryableError):
        return True

    if isinstance(exception, retryable_types):
        return True

    cause = exception.__cause__
    return cause is not None and is_retryable_exception(cause, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    stats: RetryStats | None = None,
) -> Any:
    """
    Execute a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        stats: Optional stats object updated in place

    Returns:
        Result of the function call
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    stats = stats if stats is not None else RetryStats()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            result = func(*args, **kwargs)
            stats.record_attempt(success=True)
            return result

        except Exception as e:
            error_str = str(e)

            if not is_retryable_exception(e, config.retryable_exceptions):
                stats.record_attempt(success=False, error=error_str)
                raise

            if attempt >= config.max_retries:
                stats.record_attempt(success=False, error=error_str)
                if config.log_retries:
                    logger.log(
                        config.log_level,
                        f"Max retries ({config.max_retries}) exceeded for {name}: {e}"
                    )
                raise

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter
            )
            stats.record_attempt(success=False, delay=delay, error=error_str)

            if config.log_retries:
                logger.log(
                    config.log_level,
                    f"Retry {attempt + 1}/{config.max_retries} for {name} after {delay:.2f}s: {e}"
                )

            time.sleep(delay)

