"""
Shared read-call helper for venue adapters.

Rate-limited calls are retried with exponential backoff; every other
failure is raised immediately as a VenueQueryError.
"""

import time
from typing import Callable, Optional, TypeVar

from ..exceptions import VenueQueryError

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "too many requests", "-32005", "limit exceeded", "rate limit")


def is_rate_limit(error: Exception) -> bool:
    """Check for the rate limit patterns public RPC endpoints return."""
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def call_with_backoff(
    fn: Callable[[], T],
    what: str,
    venue: Optional[str] = None,
    max_retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a contract read, retrying only on rate limits.

    Args:
        fn: Zero-argument callable performing the read
        what: Description used in the error message (e.g. pool address)
        venue: Venue name for error context
        max_retries: Maximum number of attempts
        sleep: Sleep function (injectable for tests)

    Raises:
        VenueQueryError: If the call fails or retries are exhausted
    """
    last_error: Optional[Exception] = None
    for attempt in range(max_retries):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if is_rate_limit(e) and attempt < max_retries - 1:
                # 1s, 2s, 4s
                sleep(2**attempt)
                continue
            raise VenueQueryError(
                f"Failed to read {what}: {e}", venue=venue, pool=what
            ) from e

    raise VenueQueryError(
        f"Failed to read {what} after {max_retries} retries: {last_error}",
        venue=venue,
        pool=what,
    ) from last_error
