"""Queue worker: claims jobs and runs them against the session pool."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from scrape_engine import metrics
from scrape_engine.browser.pool import PoolStatus, SessionPool
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import LeaseLostError
from scrape_engine.logging_config import get_logger
from scrape_engine.queue.backend import QueueBackend
from scrape_engine.queue.models import Job, LastError
from scrape_engine.scraper.product_scraper import ProductScraper, ScrapeResult
from scrape_engine.utils.delay import wait_or_event
from scrape_engine.worker.errors import SEVERITY_ERROR, classify_error, decide_retry
from scrape_engine.worker.events import (
    EventBus,
    JobCompleted,
    JobFailed,
    JobRetrying,
    JobStalled,
    JobStarted,
    WorkerError,
)
from scrape_engine.worker.limiter import SlidingWindowLimiter

logger = logging.getLogger(__name__)

# Consecutive claim failures tolerated before the worker treats it as a crash
MAX_CONSECUTIVE_CLAIM_ERRORS = 3


class WorkerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class WorkerStatus:
    """Snapshot for health checks."""
    worker_id: str
    running: bool
    state: str
    active_job_count: int
    pool_status: PoolStatus


class ScrapeWorker:
    """
    Pulls jobs from the queue and executes them with bounded concurrency.

    Features:
    - Aggregate concurrency bound plus a job-start rate limit
    - Lease heartbeat per running job
    - Error classification with per-kind backoff
    - Stalled-lease watchdog and periodic status log (APScheduler)
    - Idempotent graceful shutdown with a force-kill fallback
    """

    def __init__(
        self,
        backend: QueueBackend,
        pool: SessionPool,
        scraper: ProductScraper,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
        worker_id: Optional[str] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
    ):
        """
        Initialize worker.

        Args:
            backend: Queue backend to claim jobs from
            pool: Session pool the jobs run in
            scraper: Scrape task executed per job
            settings: Settings instance (defaults to module settings)
            events: Event bus for lifecycle events (a private one if omitted)
            worker_id: Identifier recorded on claimed jobs
            limiter: Job-start limiter (defaults to the configured rate limit)
        """
        self.settings = settings or default_settings
        self.backend = backend
        self.pool = pool
        self.scraper = scraper
        self.events = events or EventBus()
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.limiter = limiter or SlidingWindowLimiter(
            self.settings.rate_limit_max, self.settings.rate_limit_duration_ms
        )

        self._state = WorkerState.STOPPED
        self._stop_event = asyncio.Event()
        self._closed = asyncio.Event()
        self._slots = asyncio.Semaphore(self.settings.max_workers)
        self._tasks: Set[asyncio.Task] = set()
        self._claim_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._crash_task: Optional[asyncio.Task] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def state(self) -> WorkerState:
        return self._state

    async def start(self) -> None:
        """Initialize the pool and begin claiming jobs."""
        if self._state != WorkerState.STOPPED or self._shutdown_task is not None:
            raise RuntimeError(f"Worker cannot start from state {self._state.value}")

        self._state = WorkerState.STARTING
        logger.info(
            f"Starting {self.worker_id} (max_workers={self.settings.max_workers}, "
            f"pool capacity={self.pool.capacity})"
        )
        try:
            await self.pool.initialize()
        except Exception:
            self._state = WorkerState.STOPPED
            raise

        self._scheduler = self._setup_scheduler()
        self._scheduler.start()
        self._claim_task = asyncio.create_task(self._claim_loop(), name=f"{self.worker_id}-claim")
        self._state = WorkerState.RUNNING
        logger.info(f"{self.worker_id} started, waiting for jobs...")

    async def wait_closed(self) -> None:
        """Block until the worker has fully shut down."""
        await self._closed.wait()

    def _setup_scheduler(self) -> AsyncIOScheduler:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._recover_stalled,
            IntervalTrigger(seconds=self.settings.stalled_interval_seconds),
            id="stalled_watchdog",
            name="Recover jobs with expired leases",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self._log_status,
            IntervalTrigger(seconds=self.settings.status_log_interval_seconds),
            id="status_log",
            name="Log queue and pool status",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        return scheduler

    # ------------------------------------------------------------------
    # Claim loop
    # ------------------------------------------------------------------

    async def _claim_loop(self) -> None:
        try:
            await self._claim_jobs()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"{self.worker_id} crashed: {e}")
            await self.events.publish(WorkerError(None, message=str(e)))
            self._crash_task = asyncio.create_task(
                self.stop(timeout=self.settings.crash_shutdown_timeout_seconds)
            )

    async def _claim_jobs(self) -> None:
        poll_ms = self.settings.poll_interval_seconds * 1000
        claim_errors = 0

        while not self._stop_event.is_set():
            await self._slots.acquire()
            if self._stop_event.is_set():
                self._slots.release()
                break

            delay = self.limiter.delay_needed()
            if delay > 0:
                self._slots.release()
                logger.debug(f"Job start rate limit reached, pausing {delay:.2f}s")
                await wait_or_event(delay * 1000, self._stop_event)
                continue

            try:
                job = await self.backend.claim(self.worker_id, self.settings.lease_duration_ms)
                claim_errors = 0
            except Exception as e:
                self._slots.release()
                claim_errors += 1
                if claim_errors >= MAX_CONSECUTIVE_CLAIM_ERRORS:
                    raise
                logger.warning(f"Claim failed ({claim_errors}/{MAX_CONSECUTIVE_CLAIM_ERRORS}): {e}")
                await wait_or_event(poll_ms, self._stop_event)
                continue

            if job is None:
                self._slots.release()
                await wait_or_event(poll_ms, self._stop_event)
                continue

            await self.limiter.acquire()
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Job task {task.get_name()} ended with an unrecorded error: {error}")

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run_job(self, job: Job) -> None:
        attempt = job.attempts_made + 1
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(job))

        job_logger = get_logger(__name__, job_id=job.id, worker_id=self.worker_id)
        job_logger.info(f"Processing job {job.id}: {job.label} (attempt {attempt})")
        await self.events.publish(JobStarted(job.id, attempt=attempt, label=job.label))

        try:
            result = await asyncio.wait_for(
                self.pool.acquire_and_run(lambda session: self.scraper.scrape(session, job)),
                timeout=self.settings.job_timeout_seconds,
            )
        except asyncio.CancelledError:
            job_logger.warning(f"Job {job.id} abandoned during shutdown; its lease will expire")
            raise
        except Exception as error:
            await self._handle_failure(job, error, attempt, time.monotonic() - started)
        else:
            await self._handle_success(job, result, time.monotonic() - started)
        finally:
            heartbeat.cancel()

    async def _heartbeat(self, job: Job) -> None:
        """Keep the job's lease alive while it runs."""
        while True:
            await asyncio.sleep(self.settings.lease_renew_interval_seconds)
            try:
                await self.backend.extend_lease(job, self.settings.lease_duration_ms)
            except LeaseLostError:
                logger.warning(f"Lease lost for job {job.id}; another worker may pick it up")
                return
            except Exception as e:
                logger.warning(f"Lease renewal failed for job {job.id}: {e}")

    async def _handle_success(self, job: Job, result: ScrapeResult, duration: float) -> None:
        try:
            await self.backend.complete(job, result.to_wire())
        except LeaseLostError:
            logger.warning(f"Job {job.id} finished after losing its lease; result discarded")
            await self.events.publish(JobStalled(job.id))
            return

        metrics.record_job_success(duration, result.total_products)
        logger.info(
            f"Job completed: {job.id} ({result.total_products} products, "
            f"{result.pages_scraped} pages, {duration:.1f}s)"
        )
        await self.events.publish(
            JobCompleted(job.id, total_products=result.total_products, duration_ms=int(duration * 1000))
        )

    async def _handle_failure(self, job: Job, error: Exception, attempt: int, duration: float) -> None:
        kind = classify_error(error)
        previous = job.last_error.kind if job.last_error else None
        streak = job.last_error.streak + 1 if previous == kind else 1
        last_error = LastError(
            kind=kind, message=str(error) or type(error).__name__, attempt=attempt, streak=streak
        )
        max_attempts = job.max_attempts or self.settings.retry_attempts
        decision = decide_retry(kind, attempt, max_attempts, previous, self.settings, streak=streak)

        level = logging.ERROR if decision.severity == SEVERITY_ERROR else logging.WARNING
        logger.log(
            level,
            f"Job {job.id} failed with {kind.value} (attempt {attempt}/{max_attempts}): {last_error.message}",
        )

        try:
            if decision.retry:
                await self.backend.retry_later(job, last_error, decision.delay_ms)
            else:
                await self.backend.fail(job, last_error)
        except LeaseLostError:
            logger.warning(f"Job {job.id} failed after losing its lease; failure not recorded")
            await self.events.publish(JobStalled(job.id))
            return

        metrics.record_job_failure(kind.value, duration, decision.retry)
        if decision.retry:
            logger.info(f"Job {job.id} scheduled for retry in {decision.delay_ms}ms")
            await self.events.publish(JobRetrying(job.id, error=last_error, delay_ms=decision.delay_ms))
        else:
            logger.error(f"Job {job.id} failed permanently ({decision.terminal_reason})")
            await self.events.publish(JobFailed(job.id, error=last_error, reason=decision.terminal_reason))

    # ------------------------------------------------------------------
    # Scheduled maintenance
    # ------------------------------------------------------------------

    async def _recover_stalled(self) -> None:
        try:
            recovery = await self.backend.recover_stalled(self.settings.max_stalled_count)
        except Exception as e:
            logger.error(f"Stalled job check failed: {e}")
            return

        for job_id in recovery.recovered:
            logger.warning(f"Job {job_id} stalled and was returned to the queue")
            await self.events.publish(JobStalled(job_id))
        for job_id in recovery.failed:
            logger.error(f"Job {job_id} stalled too many times and was failed")
        if recovery.recovered or recovery.failed:
            metrics.record_stalled_recovered(len(recovery.recovered) + len(recovery.failed))

    async def _log_status(self) -> None:
        try:
            counts = await self.backend.counts()
        except Exception as e:
            logger.error(f"Status check failed: {e}")
            return
        metrics.update_queue_counts(counts)
        pool_status = self.pool.status()
        logger.info(
            f"Worker status: active_jobs={len(self._tasks)}, "
            f"pool={pool_status.active_sessions}/{pool_status.capacity}, queue={counts}"
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the worker. Safe to call concurrently and repeatedly.

        All callers wait on the same shutdown sequence.

        Args:
            timeout: Seconds to wait for in-flight jobs (defaults to config)
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown(timeout))
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self, timeout: Optional[float]) -> None:
        timeout = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        self._state = WorkerState.STOPPING
        logger.info(f"Shutting down {self.worker_id} gracefully (timeout={timeout}s)")
        self._stop_event.set()

        # The claim loop may be parked on a job slot; both waits share one deadline
        if self._claim_task is not None and self._claim_task is not asyncio.current_task():
            done, _ = await asyncio.wait({self._claim_task}, timeout=max(0.0, deadline - loop.time()))
            if not done:
                self._claim_task.cancel()

        pending: Set[asyncio.Task] = set()
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight job(s)")
            _, pending = await asyncio.wait(set(self._tasks), timeout=max(0.0, deadline - loop.time()))
            if pending:
                logger.warning(f"{len(pending)} job(s) still running after {timeout}s, proceeding with shutdown")

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        try:
            await self.pool.close(timeout=0 if pending else None)
        except Exception as e:
            logger.error(f"Pool close failed, force killing: {e}")
            await self.pool.force_kill()

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending, timeout=5)

        try:
            await self.backend.close()
        except Exception as e:
            logger.error(f"Error closing queue backend: {e}")

        self._state = WorkerState.STOPPED
        self._closed.set()
        logger.info(f"{self.worker_id} shutdown complete")

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            worker_id=self.worker_id,
            running=self._state == WorkerState.RUNNING,
            state=self._state.value,
            active_job_count=len(self._tasks),
            pool_status=self.pool.status(),
        )
