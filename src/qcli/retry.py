"""Retry helper with exponential backoff for transient client failures."""

import logging
import random
import time
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
JITTER_FACTOR = 0.1

_NETWORK_MARKERS = (
    "network",
    "econnrefused",
    "enotfound",
    "etimedout",
    "econnreset",
    "socket hang up",
    "fetch failed",
    "connection reset",
    "connection refused",
    "connection aborted",
    "could not connect",
    "timed out",
    "read timeout",
)
_RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests", "throttl", "rate exceeded")
_SERVER_MARKERS = ("500", "502", "503", "504", "service unavailable", "serviceunavailable")
_RETRYABLE_CLASS_MARKERS = (
    "timeout",
    "connectionerror",
    "connectionclosed",
    "endpointconnectionerror",
    "throttling",
    "serviceunavailable",
)


def _status_code(error: BaseException) -> int | None:
    """Extract an HTTP status from the error, whatever client raised it."""
    for attr in ("status_code", "status", "http_status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value

    # botocore ClientError and friends
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(status, int):
            return status
    else:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status

    return None


def is_retryable_error(error: Any) -> bool:
    """
    Decide whether an error is transient.

    Eligibility is read from the error's signal (status attributes, class name
    and message), not its type, because the embedding and model clients
    surface failures heterogeneously.

    Args:
        error: The raised value.

    Returns:
        True for network errors, rate limiting and 5xx; False otherwise.
    """
    if not isinstance(error, BaseException):
        return False

    status = _status_code(error)
    if status is not None:
        if status == 429 or status >= 500:
            return True
        if 400 <= status < 500:
            return False

    name = type(error).__name__.lower()
    if any(marker in name for marker in _RETRYABLE_CLASS_MARKERS):
        return True

    message = str(error).lower()
    if any(marker in message for marker in _NETWORK_MARKERS):
        return True
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return True
    if any(marker in message for marker in _SERVER_MARKERS):
        return True

    return False


def with_retry(
    fn: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """
    Call ``fn`` and retry it on transient failures.

    Args:
        fn: Zero-argument callable to invoke.
        max_retries: Retries after the first attempt.
        initial_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        backoff_multiplier: Growth factor between delays.
        is_retryable: Predicate deciding whether an error is transient.
        on_retry: Callback receiving (attempt, error, delay) before sleeping.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        The last error raised by ``fn`` once retries are exhausted, or the
        first non-retryable error.
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return fn()
        except Exception as e:
            if attempt == max_retries or not is_retryable(e):
                raise

            # +/-10% jitter
            jitter = delay * JITTER_FACTOR * (random.random() * 2 - 1)
            actual_delay = min(max(delay + jitter, 0.0), max_delay)

            logger.warning(
                f"Transient failure (attempt {attempt + 1}/{max_retries}), "
                f"retrying in {actual_delay:.2f}s: {e}"
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, actual_delay)

            time.sleep(actual_delay)
            delay = min(delay * backoff_multiplier, max_delay)

    raise AssertionError("unreachable")
