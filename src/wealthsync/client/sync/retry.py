"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Run a callable, retrying on selected exceptions
- backoff_delays: The sequence of delays a BackoffPolicy allows

Delays come from a BackoffPolicy so callers (and tests) control the
schedule; the sleep function is injectable as well.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TypeVar

from wealthsync.core.config import BackoffPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(policy: BackoffPolicy) -> Iterator[float]:
    """Yield the delay before each retry the policy allows."""
    for attempt in range(policy.max_attempts):
        yield policy.delay(attempt)


def retry_with_backoff(
    func: Callable[[], T],
    policy: BackoffPolicy,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a function with exponential backoff retry.

    The function runs once, then up to `policy.max_attempts` more times.

    Args:
        func: Function to execute.
        policy: Backoff schedule.
        retryable_exceptions: Exception types that trigger a retry.
        sleep: Function used to wait between attempts.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    delays = backoff_delays(policy)
    attempt = 0
    while True:
        try:
            return func()
        except retryable_exceptions as e:
            attempt += 1
            delay = next(delays, None)
            if delay is None:
                logger.error("All %d retries failed: %s", policy.max_attempts, e)
                raise
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.2fs...",
                attempt,
                policy.max_attempts + 1,
                e,
                delay,
            )
            sleep(delay)
