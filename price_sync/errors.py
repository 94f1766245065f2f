"""Error classification and retry logic.

Transient upstream failures (network, timeouts, rate limits) are retried
with exponential backoff on the catch-up and manual paths. Store failures
and everything else are surfaced to the caller without retrying.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

import httpx

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(StrEnum):
    """Categories of errors for handling decisions."""

    TRANSIENT = "transient"  # Retry-able (network, timeout, rate limit)
    STORE = "store"  # Local database failure, transaction rolled back
    PERMANENT = "permanent"  # Not expected to succeed on retry


# Known transient error patterns
_TRANSIENT_PATTERNS = frozenset(
    {
        "timeout",
        "timed out",
        "connection reset",
        "connection refused",
        "connection closed",
        "rate limit",
        "too many requests",
        "service unavailable",
        "gateway timeout",
        "bad gateway",
        "temporarily unavailable",
        "network unreachable",
        "name resolution",
        "eof occurred",
        "broken pipe",
    }
)


def classify_error(exception: BaseException) -> ErrorCategory:
    """Classify an exception into an error category.

    Args:
        exception: The exception to classify.

    Returns:
        ErrorCategory based on exception type and message.
    """
    if isinstance(exception, sqlite3.Error):
        return ErrorCategory.STORE

    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        if status == 429 or status >= 500:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    if isinstance(exception, (httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    error_msg = str(exception).lower()
    if any(pattern in error_msg for pattern in _TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.PERMANENT


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum attempts, including the first one.
        base_delay_ms: Delay after the first failed attempt in milliseconds.
        max_delay_ms: Maximum delay cap in milliseconds.
        exponential_base: Base for exponential backoff.
    """

    max_retries: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int = 30000
    exponential_base: float = 2.0

    def get_delay_ms(self, attempt: int) -> int:
        """Calculate delay for given attempt number.

        Args:
            attempt: Retry attempt number (0-indexed).

        Returns:
            Delay in milliseconds with exponential backoff.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        return min(int(delay), self.max_delay_ms)


def retry_with_backoff(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    operation: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying transient errors.

    Args:
        func: Zero-argument callable.
        config: Retry configuration (uses defaults if None).
        operation: Description used in log messages.
        sleep: Sleep function, injectable for tests.

    Returns:
        Whatever ``func`` returns.

    Raises:
        The last exception once attempts are exhausted, or immediately for
        non-transient errors.
    """
    config = config or RetryConfig()
    attempts = max(1, config.max_retries)
    for attempt in range(attempts):
        try:
            return func()
        except Exception as e:
            category = classify_error(e)
            if category != ErrorCategory.TRANSIENT or attempt == attempts - 1:
                logger.error(
                    "%s failed (%s, attempt %d/%d): %s",
                    operation or "operation",
                    category,
                    attempt + 1,
                    attempts,
                    e,
                )
                raise
            delay_ms = config.get_delay_ms(attempt)
            logger.warning(
                "Transient error (attempt %d/%d): %s [%s] - retry in %dms",
                attempt + 1,
                attempts,
                e,
                operation,
                delay_ms,
            )
            sleep(delay_ms / 1000)
    raise AssertionError("unreachable")  # pragma: no cover
