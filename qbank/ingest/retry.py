"""
Bounded retry with exponential backoff for external calls.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from qbank.ingest.errors import IngestError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    attempts: int = 3,
    backoff_seconds: float = 1.0,
    on_retry: Optional[Callable[[int, IngestError], None]] = None,
    description: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds or the attempt budget is spent.

    Only retryable IngestErrors are retried; anything else propagates on the
    first failure.

    Args:
        fn: Zero-argument callable performing the external call
        attempts: Total attempts including the first
        backoff_seconds: Delay before the first retry; doubles each retry
        on_retry: Optional hook(attempt_number, error) run before each retry
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        IngestError: The last error once attempts are exhausted
    """
    attempt = 1
    while True:
        try:
            return fn()
        except IngestError as e:
            if not e.retryable or attempt >= attempts:
                raise

            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            if on_retry:
                on_retry(attempt, e)
            if delay > 0:
                sleep(delay)
            attempt += 1
