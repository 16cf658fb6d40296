from __future__ import annotations

# Bounded retries for transient store failures.
#
# Only the store-access layer calls this. Business operations are never
# re-run as a whole, so a retried call can't allocate a number twice.

import logging
import time
from typing import Callable, TypeVar

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: float = 0.05,
    what: str = "store call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `fn`, retrying `StoreUnavailable` up to `attempts` times in total.

    The delay doubles after each failed attempt. The last error propagates.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    delay = backoff
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except StoreUnavailable as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", what, attempts, e)
                raise
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.2fs", what, attempt, attempts, e, delay)
            sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")
