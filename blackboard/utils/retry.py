"""Retry decorator with exponential backoff for transient errors.

The registry raises ``DatabaseBusyError`` when another process holds the
SQLite write lock. Status writes that must not be lost are wrapped with
``retry`` so a busy database delays them instead of dropping them.

Only transient errors are retried: exceptions listed in ``exceptions``,
``RetryableError``, or any exception whose ``retryable`` attribute is true.
"""

import functools
import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default transient exceptions that should be retried
DEFAULT_TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    TimeoutError,
    ConnectionError,
)


class RetryableError(Exception):
    """Explicitly mark an error as retryable when wrapping another error."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class NonRetryableError(Exception):
    """Explicitly mark an error as never retryable."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


def is_retryable(exc: Exception, exceptions: Tuple[Type[Exception], ...]) -> bool:
    """Check whether an exception should trigger another attempt."""
    if isinstance(exc, NonRetryableError):
        return False
    if isinstance(exc, (RetryableError, *exceptions)):
        return True
    return bool(getattr(exc, "retryable", False))


def retry(
    max_retries: int = 3,
    min_backoff: float = 1.0,
    max_backoff: float = 10.0,
    exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator that retries a function on transient failures with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3).
        min_backoff: Minimum backoff time in seconds (default: 1.0).
        max_backoff: Maximum backoff time in seconds (default: 10.0).
        exceptions: Exception types to retry on. If None, uses
            DEFAULT_TRANSIENT_EXCEPTIONS.
        on_retry: Optional callback called before each retry with (exception, attempt).
        sleep: Sleep function, replaceable in tests.

    Example:
        @retry(max_retries=5, min_backoff=0.1, max_backoff=2.0)
        def mark_failed(worker_id):
            return registry.update_status(worker_id, "failed")
    """
    if exceptions is None:
        exceptions = DEFAULT_TRANSIENT_EXCEPTIONS

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, "__name__", repr(func))

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable(e, exceptions):
                        raise
                    attempt += 1
                    if attempt > max_retries:
                        logger.warning(
                            "Max retries (%d) exceeded for %s: %s", max_retries, name, e
                        )
                        raise

                    backoff = min(min_backoff * (2 ** (attempt - 1)), max_backoff)
                    # Jitter so competing writers do not retry in lockstep
                    sleep_time = backoff + random.uniform(0, backoff * 0.1)

                    logger.debug(
                        "Retry %d/%d for %s after %.2fs: %s",
                        attempt,
                        max_retries,
                        name,
                        sleep_time,
                        e,
                    )
                    if on_retry:
                        on_retry(e, attempt)
                    sleep(sleep_time)

        return wrapper

    return decorator
