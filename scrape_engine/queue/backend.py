"""Queue backend contract and the in-process implementation."""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import ErrorKind, LeaseLostError
from scrape_engine.queue.models import Job, JobState, LastError

logger = logging.getLogger(__name__)


@dataclass
class StalledRecovery:
    """Result of one stalled-lease sweep."""
    recovered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class QueueBackend(Protocol):
    """
    Durable priority queue with claim-and-lease semantics.

    Lower ``priority`` values are claimed first; FIFO within a priority.
    Every operation that acts on a claimed job checks the job's lock token
    and raises ``LeaseLostError`` if another worker owns it now.
    """

    async def add(self, job: Job) -> str:
        ...

    async def add_bulk(self, jobs: List[Job]) -> List[str]:
        ...

    async def claim(self, worker_id: str, lease_ms: int) -> Optional[Job]:
        ...

    async def extend_lease(self, job: Job, lease_ms: int) -> None:
        ...

    async def complete(self, job: Job, result: Dict[str, Any]) -> None:
        ...

    async def fail(self, job: Job, last_error: LastError) -> None:
        ...

    async def retry_later(self, job: Job, last_error: LastError, delay_ms: int) -> None:
        ...

    async def recover_stalled(self, max_stalled_count: int) -> StalledRecovery:
        ...

    async def counts(self) -> Dict[str, int]:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def list_jobs(self, state: JobState, start: int = 0, end: int = -1) -> List[Job]:
        ...

    async def requeue(self, job_id: str) -> bool:
        ...

    async def clean(self, state: JobState, grace_seconds: float) -> int:
        ...

    async def ping(self) -> float:
        ...

    async def close(self) -> None:
        ...


@dataclass
class _Entry:
    job: Job
    seq: int
    ready_at_ms: float = 0
    lease_expires_ms: float = 0
    finished_at_ms: float = 0
    worker_id: Optional[str] = None


class MemoryQueueBackend:
    """
    In-process queue with the same contract as the Redis backend.

    Suitable for tests and single-process runs; nothing survives a restart.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        self.settings = settings or default_settings
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: Dict[str, _Entry] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._closed = False

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def add(self, job: Job) -> str:
        async with self._lock:
            return self._add(job)

    async def add_bulk(self, jobs: List[Job]) -> List[str]:
        async with self._lock:
            return [self._add(job) for job in jobs]

    def _add(self, job: Job) -> str:
        stored = replace(job, id=str(next(self._ids)))
        entry = _Entry(job=stored, seq=next(self._seq))
        if stored.delay_ms:
            stored.state = JobState.DELAYED
            entry.ready_at_ms = self._now_ms() + stored.delay_ms
        else:
            stored.state = JobState.WAITING
        self._entries[stored.id] = entry
        return stored.id

    async def claim(self, worker_id: str, lease_ms: int) -> Optional[Job]:
        async with self._lock:
            now = self._now_ms()
            for entry in self._entries.values():
                if entry.job.state == JobState.DELAYED and entry.ready_at_ms <= now:
                    entry.job.state = JobState.WAITING

            waiting = [e for e in self._entries.values() if e.job.state == JobState.WAITING]
            if not waiting:
                return None

            entry = min(waiting, key=lambda e: (e.job.effective_priority, e.seq))
            entry.job.state = JobState.ACTIVE
            entry.job.lock_token = uuid4().hex
            entry.lease_expires_ms = now + lease_ms
            entry.worker_id = worker_id
            return replace(entry.job)

    def _owned(self, job: Job) -> _Entry:
        entry = self._entries.get(job.id)
        if (
            entry is None
            or entry.job.state != JobState.ACTIVE
            or entry.job.lock_token != job.lock_token
        ):
            raise LeaseLostError(job.id)
        return entry

    async def extend_lease(self, job: Job, lease_ms: int) -> None:
        async with self._lock:
            entry = self._owned(job)
            entry.lease_expires_ms = self._now_ms() + lease_ms

    async def complete(self, job: Job, result: Dict[str, Any]) -> None:
        async with self._lock:
            entry = self._owned(job)
            self._finish(entry, JobState.COMPLETED)
            entry.job.result = result
            job.state = JobState.COMPLETED
            job.result = result
            self._prune(
                JobState.COMPLETED,
                self.settings.remove_on_complete_age_seconds,
                self.settings.remove_on_complete_count,
            )

    async def fail(self, job: Job, last_error: LastError) -> None:
        async with self._lock:
            entry = self._owned(job)
            self._finish(entry, JobState.FAILED)
            entry.job.attempts_made += 1
            entry.job.last_error = last_error
            job.state = JobState.FAILED
            job.attempts_made = entry.job.attempts_made
            job.last_error = last_error
            self._prune(
                JobState.FAILED,
                self.settings.remove_on_fail_age_seconds,
                self.settings.remove_on_fail_count,
            )

    async def retry_later(self, job: Job, last_error: LastError, delay_ms: int) -> None:
        async with self._lock:
            entry = self._owned(job)
            entry.job.attempts_made += 1
            entry.job.last_error = last_error
            entry.job.lock_token = None
            entry.worker_id = None
            if delay_ms > 0:
                entry.job.state = JobState.DELAYED
                entry.ready_at_ms = self._now_ms() + delay_ms
            else:
                entry.job.state = JobState.WAITING
            entry.seq = next(self._seq)
            job.state = entry.job.state
            job.attempts_made = entry.job.attempts_made
            job.last_error = last_error

    def _finish(self, entry: _Entry, state: JobState) -> None:
        entry.job.state = state
        entry.job.lock_token = None
        entry.worker_id = None
        entry.finished_at_ms = self._now_ms()

    async def recover_stalled(self, max_stalled_count: int) -> StalledRecovery:
        recovery = StalledRecovery()
        async with self._lock:
            now = self._now_ms()
            for entry in self._entries.values():
                if entry.job.state != JobState.ACTIVE or entry.lease_expires_ms > now:
                    continue

                entry.job.stalled_count += 1
                if entry.job.stalled_count > max_stalled_count:
                    entry.job.last_error = LastError(
                        kind=ErrorKind.TIMEOUT,
                        message="job stalled more than allowable limit",
                        attempt=entry.job.attempts_made,
                    )
                    self._finish(entry, JobState.FAILED)
                    recovery.failed.append(entry.job.id)
                else:
                    entry.job.state = JobState.WAITING
                    entry.job.lock_token = None
                    entry.worker_id = None
                    recovery.recovered.append(entry.job.id)
        return recovery

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            counts = {state.value: 0 for state in JobState}
            for entry in self._entries.values():
                counts[entry.job.state.value] += 1
            return counts

    async def get(self, job_id: str) -> Optional[Job]:
        entry = self._entries.get(job_id)
        return replace(entry.job) if entry else None

    async def list_jobs(self, state: JobState, start: int = 0, end: int = -1) -> List[Job]:
        entries = sorted(
            (e for e in self._entries.values() if e.job.state == state),
            key=self._sort_key(state),
        )
        stop = None if end == -1 else end + 1
        return [replace(e.job) for e in entries[start:stop]]

    @staticmethod
    def _sort_key(state: JobState) -> Callable[[_Entry], Tuple]:
        if state in (JobState.COMPLETED, JobState.FAILED):
            return lambda e: (-e.finished_at_ms, e.seq)
        if state == JobState.DELAYED:
            return lambda e: (e.ready_at_ms, e.seq)
        return lambda e: (e.job.effective_priority, e.seq)

    async def requeue(self, job_id: str) -> bool:
        async with self._lock:
            entry = self._entries.get(job_id)
            if entry is None or entry.job.state != JobState.FAILED:
                return False
            entry.job.state = JobState.WAITING
            entry.job.attempts_made = 0
            entry.job.stalled_count = 0
            entry.job.result = None
            entry.seq = next(self._seq)
            return True

    async def clean(self, state: JobState, grace_seconds: float) -> int:
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Can only clean completed or failed jobs, not {state.value}")
        async with self._lock:
            cutoff = self._now_ms() - grace_seconds * 1000
            stale = [
                job_id for job_id, e in self._entries.items()
                if e.job.state == state and e.finished_at_ms <= cutoff
            ]
            for job_id in stale:
                del self._entries[job_id]
            return len(stale)

    def _prune(self, state: JobState, max_age_seconds: int, max_count: int) -> None:
        cutoff = self._now_ms() - max_age_seconds * 1000
        finished = sorted(
            (e for e in self._entries.values() if e.job.state == state),
            key=lambda e: e.finished_at_ms,
            reverse=True,
        )
        for index, entry in enumerate(finished):
            if index >= max_count or entry.finished_at_ms < cutoff:
                del self._entries[entry.job.id]

    async def ping(self) -> float:
        return 0.0

    async def close(self) -> None:
        self._closed = True


def create_backend(settings: Optional[Settings] = None) -> QueueBackend:
    """Build the queue backend named by ``settings.queue_backend``."""
    settings = settings or default_settings
    if settings.queue_backend == "memory":
        logger.info("Using in-memory queue backend")
        return MemoryQueueBackend(settings)
    if settings.queue_backend == "redis":
        from scrape_engine.queue.redis_backend import RedisQueueBackend

        return RedisQueueBackend(settings.redis_url, settings.queue_name, settings)
    raise ValueError(f"Unknown queue backend: {settings.queue_backend}")
