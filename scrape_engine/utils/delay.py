"""Cooperative wait helpers with randomized, human-like timing."""

import asyncio
import random
from typing import Optional


def random_int(min_value: int, max_value: int, rng: Optional[random.Random] = None) -> int:
    """Random integer between min and max (inclusive)."""
    rng = rng or random
    if max_value <= min_value:
        return min_value
    return rng.randint(min_value, max_value)


async def wait(ms: float) -> None:
    """Suspend the calling task for ``ms`` milliseconds."""
    await asyncio.sleep(max(0.0, ms) / 1000)


async def random_wait(min_ms: int, max_ms: int, rng: Optional[random.Random] = None) -> int:
    """
    Suspend for a uniformly random duration in [min_ms, max_ms].

    Returns:
        Milliseconds waited
    """
    ms = random_int(min_ms, max_ms, rng)
    await wait(ms)
    return ms


async def long_pause() -> int:
    """Very long pause for rate limiting protection (5-10s)."""
    return await random_wait(5000, 10000)


async def wait_or_event(ms: float, event: asyncio.Event) -> bool:
    """
    Race a wait against an event.

    Args:
        ms: Maximum milliseconds to wait
        event: Cancellation signal

    Returns:
        True if the event fired before the wait elapsed
    """
    if event.is_set():
        return True
    try:
        await asyncio.wait_for(event.wait(), timeout=max(0.0, ms) / 1000)
        return True
    except asyncio.TimeoutError:
        return False
