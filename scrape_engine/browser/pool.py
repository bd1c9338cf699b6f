"""Bounded pool of browser sessions.

The pool is the only shared mutable resource in the engine. Work reaches a
session exclusively through ``acquire_and_run``, which admits at most
``capacity`` tasks at once and always resets the session afterwards.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from scrape_engine import metrics
from scrape_engine.browser.session import Session, SessionFactory
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import PoolCloseError, PoolClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PoolState(str, Enum):
    """Pool lifecycle."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class PoolStatus:
    """Snapshot for health checks."""
    initialized: bool
    active_sessions: int
    capacity: int
    state: str


class SessionPool:
    """
    Owns a bounded set of sessions and lends them to tasks.

    Features:
    - Counting admission gate (never more than ``capacity`` borrowed sessions)
    - Session reuse with state reset between tasks
    - Drain-then-close shutdown with a deadline
    - Force-kill escape hatch
    """

    def __init__(
        self,
        factory: SessionFactory,
        capacity: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize session pool.

        Args:
            factory: Creates sessions and owns the browser process(es)
            capacity: Max concurrently borrowed sessions (defaults to config)
            settings: Settings instance (defaults to module settings)
        """
        self.settings = settings or default_settings
        self.factory = factory
        self.capacity = capacity or self.settings.max_concurrency
        if self.capacity < 1:
            raise ValueError("Pool capacity must be at least 1")

        self._state = PoolState.UNINITIALIZED
        self._semaphore = asyncio.Semaphore(self.capacity)
        self._init_lock = asyncio.Lock()
        self._sessions: Dict[str, Session] = {}
        self._idle: List[Session] = []
        self._active = 0
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def active_sessions(self) -> int:
        return self._active

    async def initialize(self) -> None:
        """Start the underlying factory. Safe to call more than once."""
        async with self._init_lock:
            if self._state == PoolState.READY:
                return
            if self._state in (PoolState.DRAINING, PoolState.CLOSED):
                raise PoolClosedError(f"Cannot initialize pool in state {self._state.value}")

            self._state = PoolState.INITIALIZING
            logger.info(f"Initializing session pool (capacity={self.capacity})")
            try:
                await self.factory.start()
            except Exception:
                self._state = PoolState.UNINITIALIZED
                raise

            self._state = PoolState.READY
            logger.info("Session pool initialized successfully")

    async def acquire_and_run(self, task: Callable[[Session], Awaitable[T]]) -> T:
        """
        Run ``task`` with a borrowed session.

        Blocks until a slot is free. The session is reset in every case
        (success, error, cancellation) before it goes back to the pool.

        Args:
            task: Async callable receiving the session

        Returns:
            The task's result

        Raises:
            PoolClosedError: If the pool is not ready
            Whatever ``task`` raises, after cleanup
        """
        self._ensure_accepting()

        async with self._semaphore:
            # Pool may have started draining while we waited for a slot
            self._ensure_accepting()

            self._active += 1
            self._drained.clear()
            metrics.update_pool_active_sessions(self._active)

            session: Optional[Session] = None
            try:
                session = await self._checkout()
                return await task(session)
            finally:
                if session is not None:
                    await self._checkin(session)
                self._active -= 1
                metrics.update_pool_active_sessions(self._active)
                if self._active == 0:
                    self._drained.set()
                logger.debug(f"Task cleanup complete (active_sessions={self._active})")

    def _ensure_accepting(self) -> None:
        if self._state != PoolState.READY:
            raise PoolClosedError(f"Session pool is {self._state.value}")

    async def _checkout(self) -> Session:
        """Take an idle session or create a new one."""
        while self._idle:
            session = self._idle.pop()
            if session.alive:
                session.busy = True
                return session
            self._sessions.pop(session.id, None)

        session = await self.factory.create_session()
        self._sessions[session.id] = session
        session.busy = True
        logger.debug(f"Created {session.id} (total sessions: {len(self._sessions)})")
        return session

    async def _checkin(self, session: Session) -> None:
        """Reset a session and return it to the idle list (or destroy it)."""
        session.busy = False
        try:
            await session.reset()
        except Exception as e:
            logger.warning(f"Session reset failed for {session.id}, destroying it: {e}")
            metrics.record_session_destroyed("reset_failed")
            await self._destroy(session)
            return

        if self._state == PoolState.READY and session.alive:
            self._idle.append(session)
        else:
            await self._destroy(session)

    async def _destroy(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        try:
            await session.close()
        except Exception as e:
            logger.debug(f"Error closing {session.id}: {e}")

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Drain and close the pool.

        Stops admitting new tasks, waits up to ``timeout`` seconds for
        borrowed sessions to come back, then closes every session and the
        factory. Session close errors are logged and skipped.

        Args:
            timeout: Seconds to wait for in-flight tasks (defaults to config)

        Raises:
            PoolCloseError: If the factory could not be closed in time;
                callers should fall back to ``force_kill``
        """
        if self._state == PoolState.CLOSED:
            logger.debug("Session pool already closed")
            return
        if self._state == PoolState.UNINITIALIZED:
            self._state = PoolState.CLOSED
            return

        timeout = self.settings.pool_close_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + timeout
        self._state = PoolState.DRAINING
        logger.info(f"Closing session pool (active_sessions={self._active})")

        if not self._drained.is_set():
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Force closing with {self._active} active sessions")

        for session in list(self._sessions.values()):
            try:
                await asyncio.wait_for(session.close(), timeout=max(1.0, deadline - time.monotonic()))
            except Exception as e:
                logger.error(f"Error closing {session.id}: {e}")
        self._sessions.clear()
        self._idle.clear()

        try:
            await asyncio.wait_for(self.factory.close(), timeout=max(5.0, deadline - time.monotonic()))
        except Exception as e:
            logger.error(f"Error closing session factory: {e}")
            raise PoolCloseError(f"Session pool did not close cleanly: {e}") from e

        self._state = PoolState.CLOSED
        logger.info("Session pool closed successfully")

    async def force_kill(self) -> None:
        """Terminate all backing processes immediately. Use only when close fails."""
        logger.warning(f"Force killing session pool (active_sessions={self._active})")
        self._state = PoolState.CLOSED
        try:
            await self.factory.force_kill()
        except Exception as e:
            logger.error(f"Force kill failed: {e}")

        for session in self._sessions.values():
            session.alive = False
        self._sessions.clear()
        self._idle.clear()

    def status(self) -> PoolStatus:
        """Get current pool status (non-blocking)."""
        return PoolStatus(
            initialized=self._state in (PoolState.READY, PoolState.DRAINING),
            active_sessions=self._active,
            capacity=self.capacity,
            state=self._state.value,
        )
