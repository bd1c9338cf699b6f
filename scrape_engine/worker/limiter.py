"""Sliding-window limiter for job starts."""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """
    Allow at most ``max_events`` acquisitions in any ``window_ms`` window.

    Callers that would exceed the limit sleep until the oldest event in the
    window expires.
    """

    def __init__(self, max_events: int, window_ms: int, clock: Callable[[], float] = time.monotonic):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.max_events = max_events
        self.window = window_ms / 1000
        self._clock = clock
        self._events: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window:
            self._events.popleft()

    def delay_needed(self) -> float:
        """Seconds until the next acquisition would be allowed (0 if now)."""
        now = self._clock()
        self._evict(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(0.0, self.window - (now - self._events[0]))

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait_time = self.delay_needed()
                if wait_time <= 0:
                    break
                logger.debug(f"Rate limit reached, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
            self._events.append(self._clock())
