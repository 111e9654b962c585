"""
Retry utilities with exponential backoff for transient errors.

Google APIs fail intermittently with rate limiting (HTTP 429), server
errors (5xx) and dropped connections. Those calls are retried with a delay
that doubles on every attempt (capped at ``max_delay``) and is multiplied by
a random factor in [0.5, 1.5) so concurrent clients don't retry in lockstep.

USAGE:
------
    from utils.retry import retry_on_transient_error

    def is_retryable(exc):
        if isinstance(exc, HttpError):
            return exc.resp.status in TRANSIENT_HTTP_STATUS_CODES
        return is_transient_network_error(exc)

    @retry_on_transient_error(is_retryable=is_retryable, max_retries=5)
    def call_api():
        return request.execute()
"""

import random
import time
from functools import wraps
from typing import Callable, Optional

import structlog

log = structlog.get_logger(__name__)

# HTTP status codes that indicate a temporary server-side condition
TRANSIENT_HTTP_STATUS_CODES = {429, 500, 502, 503, 504}

# Socket-level failures; OSError covers resets and DNS errors
TRANSIENT_NETWORK_EXCEPTIONS = (ConnectionError, TimeoutError, OSError)


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """Delay before retry number ``attempt`` (0-indexed), jitter included."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay * (0.5 + random.random())


def log_retry(exc: Exception, attempt: int, delay: float) -> None:
    """Default ``on_retry`` callback: one warning per retry."""
    log.warning("retrying after transient error", error=type(exc).__name__,
                detail=str(exc), attempt=attempt, delay=round(delay, 1))


def retry_on_transient_error(
    is_retryable: Callable[[Exception], bool],
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    on_retry: Optional[Callable[[Exception, int, float], None]] = log_retry,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator that retries a function on transient errors with exponential backoff.

    Args:
        is_retryable: Predicate deciding whether an exception is transient.
                      Non-retryable exceptions propagate immediately.
        max_retries: Retry attempts after the initial try (total = max_retries + 1).
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for the un-jittered delay.
        on_retry: Called as ``on_retry(exc, attempt, delay)`` before sleeping,
                  with a 1-indexed attempt number. Pass None to disable.
        sleep: Sleep function, replaceable in tests.

    Raises:
        The last exception once all retries are exhausted.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    if not is_retryable(exc) or attempt == max_retries:
                        raise
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    if on_retry:
                        on_retry(exc, attempt + 1, delay)
                    sleep(delay)
        return wrapper
    return decorator


def is_transient_network_error(exc: Exception) -> bool:
    """Check if an exception is a transient network error."""
    return isinstance(exc, TRANSIENT_NETWORK_EXCEPTIONS)
