"""Bounded retries with backoff for idempotent calls."""

import logging
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def exponential_backoff(base: float) -> Callable[[int], float]:
    """Wait ``base``, ``2*base``, ``4*base``... after attempts 1, 2, 3..."""
    return lambda attempt: base * (2 ** (attempt - 1))


def with_retries(
    action: Callable[[], T],
    *,
    action_name: str,
    max_retries: int,
    retry_wait_fn: Callable[[int], float],
    is_retryable: Callable[[Exception], bool] = lambda _e: True,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run an action, retrying retryable failures up to ``max_retries`` attempts.

    Only use this for reads or other calls that are safe to repeat.

    Args:
        action: Zero-argument callable to run
        action_name: Name used in log messages
        max_retries: Total number of attempts (at least 1)
        retry_wait_fn: Seconds to wait after a given failed attempt number
        is_retryable: Predicate deciding whether an error is transient
        logger: Optional logger instance
        sleep: Sleep function (injectable for tests)

    Returns:
        The action's result

    Raises:
        The last error once attempts are exhausted, or the first non-retryable error
    """
    logger = logger or logging.getLogger(__name__)
    attempts = max(1, max_retries)

    for attempt in range(1, attempts + 1):
        try:
            return action()
        except Exception as e:
            if not is_retryable(e):
                raise

            logger.warning(f"{action_name} attempt {attempt}/{attempts} failed: {e}")
            if attempt >= attempts:
                logger.error(f"Failed to {action_name} after {attempts} attempts")
                raise

            wait_time = retry_wait_fn(attempt)
            logger.info(f"Retrying in {wait_time} seconds...")
            sleep(wait_time)

    raise RuntimeError("unreachable")
