"""
Resilience infrastructure for storage calls.

Provides:
- RetryConfig: Configuration for retry behavior
- is_transient: Classifies sqlite3 errors worth retrying
- retry_with_backoff: Exponential backoff with jitter, one DDL/DML call at a time
- RateLimiter: Token bucket used to throttle backfill batches
"""

import logging
import random
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from . import config
from .errors import StorageUnavailable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "unable to open database",
    "disk i/o error",
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    max_retries: int = config.MAX_RETRIES
    base_delay: float = config.RETRY_BASE_DELAY  # seconds
    max_delay: float = config.RETRY_MAX_DELAY  # seconds
    exponential_base: float = 2.0


def is_transient(error: BaseException) -> bool:
    """True for engine errors that may clear up on their own (locks, I/O)."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def retry_with_backoff(
    func: Callable[[], T],
    config_: RetryConfig | None = None,
    logger_: logging.Logger | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute a function with exponential backoff and jitter.

    Only transient storage errors are retried. Anything else propagates
    unchanged on the first failure.

    Args:
        func: Callable to execute (a single statement, never a whole phase)
        config_: RetryConfig with max_retries, base_delay, max_delay, exponential_base
        logger_: Optional logger for retry attempts
        sleep: Injected for tests

    Returns:
        Result of successful function call

    Raises:
        StorageUnavailable if all retries are exhausted
    """
    cfg = config_ or RetryConfig()
    last_error: sqlite3.OperationalError | None = None

    for attempt in range(cfg.max_retries + 1):
        try:
            return func()
        except sqlite3.OperationalError as e:
            if not is_transient(e):
                raise
            last_error = e

            if attempt < cfg.max_retries:
                delay = min(
                    cfg.base_delay * (cfg.exponential_base**attempt),
                    cfg.max_delay,
                )
                # Add jitter (up to 10% of delay)
                jitter = random.uniform(0, delay * 0.1)  # noqa: S311
                actual_delay = delay + jitter

                if logger_:
                    logger_.warning(
                        "Attempt %d failed: %s. Retrying in %.2fs",
                        attempt + 1,
                        e,
                        actual_delay,
                    )
                sleep(actual_delay)

    if logger_:
        logger_.error("All %d attempts failed", cfg.max_retries + 1)
    raise StorageUnavailable(str(last_error)) from last_error


class RateLimiter:
    """Token bucket rate limiter for backfill batches."""

    def __init__(
        self,
        requests_per_minute: int = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Maximum batches allowed per minute
        """
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self.tokens = float(requests_per_minute)
        self.last_update = clock()
        self.max_tokens = float(requests_per_minute)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.last_update = now
        refill_rate = self.requests_per_minute / 60.0  # tokens per second
        self.tokens = min(self.max_tokens, self.tokens + elapsed * refill_rate)

    def allow_request(self) -> bool:
        """
        Check if a request should be allowed, consuming a token if so.

        Returns:
            True if request allowed, False if rate limit exceeded
        """
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def get_wait_time(self) -> float:
        """Seconds to wait before next token is available (0 if available)."""
        if self.tokens >= 1.0:
            return 0.0
        refill_rate = self.requests_per_minute / 60.0
        return (1.0 - self.tokens) / refill_rate

    def acquire(self) -> float:
        """Block until a token is available. Returns seconds slept."""
        waited = 0.0
        while not self.allow_request():
            wait = self.get_wait_time()
            self._sleep(wait)
            waited += wait
        return waited
