"""Retry with exponential backoff and jitter."""

import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from scrape_engine.utils.delay import wait

logger = logging.getLogger(__name__)

JITTER_RATIO = 0.3

RETRYABLE_MESSAGES = [
    "net::ERR_CONNECTION_RESET",
    "net::ERR_CONNECTION_REFUSED",
    "net::ERR_TIMED_OUT",
    "Navigation timeout",
    "Timeout exceeded",
    "socket hang up",
    "ECONNRESET",
    "ETIMEDOUT",
    "Protocol error",
    "Target closed",
]


@dataclass(frozen=True)
class RetryStrategy:
    """Named retry parameters."""
    max_attempts: int
    initial_delay: int
    max_delay: int
    factor: float = 2.0


# Aggressive retry for transient errors
FAST = RetryStrategy(max_attempts=3, initial_delay=500, max_delay=5000)


def compute_backoff(attempt: int, initial_delay: float, factor: float, max_delay: float) -> int:
    """
    Base delay (ms) before attempt ``attempt + 1``.

    Args:
        attempt: Attempt number that just failed (1-based)
        initial_delay: Delay after the first failure
        factor: Growth factor
        max_delay: Cap

    Returns:
        min(initial_delay * factor ** (attempt - 1), max_delay)
    """
    exponent = max(0, attempt - 1)
    return int(min(initial_delay * (factor ** exponent), max_delay))


def apply_jitter(delay: int, ratio: float = JITTER_RATIO, rng: Optional[random.Random] = None) -> int:
    """Add up to ``ratio`` of random extra delay. Never returns less than ``delay``."""
    rng = rng or random
    return delay + rng.randint(0, int(delay * ratio))


def is_retryable_error(error: BaseException) -> bool:
    """Check whether an error message matches a known transient failure."""
    message = str(error)
    return any(pattern in message for pattern in RETRYABLE_MESSAGES)


async def retry(
    operation: Callable[[int], Awaitable[Any]],
    *,
    max_attempts: int = 3,
    initial_delay: int = 1000,
    max_delay: int = 30000,
    factor: float = 2.0,
    jitter: bool = True,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[BaseException, int, int], Any]] = None,
    rng: Optional[random.Random] = None,
) -> Any:
    """
    Invoke ``operation`` until it succeeds or attempts run out.

    Args:
        operation: Async callable receiving the 1-based attempt number
        max_attempts: Total attempts including the first
        initial_delay: Delay (ms) after the first failure
        max_delay: Delay cap (ms) before jitter
        factor: Exponential growth factor
        jitter: Add up to 30% random extra delay
        is_retryable: Predicate; False propagates the error immediately
        on_retry: Called (and awaited if async) with (error, attempt, delay)
            before each wait
        rng: Random source for jitter

    Returns:
        Result of the first successful attempt

    Raises:
        The last error, with ``retry_attempts`` set to the attempts made
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except Exception as error:
            if is_retryable is not None and not is_retryable(error):
                error.retry_attempts = attempt
                raise

            if attempt >= max_attempts:
                logger.error(
                    "All retry attempts exhausted (attempt %d/%d): %s",
                    attempt,
                    max_attempts,
                    error,
                )
                error.retry_attempts = attempt
                raise

            delay = compute_backoff(attempt, initial_delay, factor, max_delay)
            if jitter:
                delay = apply_jitter(delay, rng=rng)

            logger.warning(
                "Retrying after error (attempt %d/%d, delay %dms): %s",
                attempt,
                max_attempts,
                delay,
                error,
            )

            if on_retry is not None:
                outcome = on_retry(error, attempt, delay)
                if inspect.isawaitable(outcome):
                    await outcome

            await wait(delay)
