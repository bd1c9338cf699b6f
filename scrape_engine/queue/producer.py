"""Job producer: validates scrape requests and adds them to the queue."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from scrape_engine import metrics
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import InvalidJobSpec
from scrape_engine.queue.backend import QueueBackend, create_backend
from scrape_engine.queue.models import Job, JobOptions, JobSpec, JobState

logger = logging.getLogger(__name__)

SpecLike = Union[JobSpec, Dict[str, Any]]


def _as_spec(spec: SpecLike) -> JobSpec:
    return spec if isinstance(spec, JobSpec) else JobSpec.from_dict(spec)


def _as_options(data: Optional[Dict[str, Any]]) -> Optional[JobOptions]:
    if not data:
        return None
    return JobOptions(
        priority=int(data.get("priority", 0)),
        delay_ms=int(data.get("delay_ms", data.get("delay", 0))),
        attempts=int(data["attempts"]) if data.get("attempts") is not None else None,
    )


class JobProducer:
    """Adds scrape jobs to a queue backend."""

    def __init__(self, backend: Optional[QueueBackend] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.backend = backend or create_backend(self.settings)

    def build_job(self, spec: SpecLike, options: Optional[JobOptions] = None) -> Job:
        """Validate ``spec`` and fill in defaults. Raises InvalidJobSpec."""
        return Job.create(
            _as_spec(spec),
            options,
            default_max_pages=self.settings.max_pages_per_job,
        )

    async def enqueue(self, spec: SpecLike, options: Optional[JobOptions] = None) -> str:
        """
        Add a single job.

        Args:
            spec: Keyword and/or URL, optional max pages
            options: Priority, initial delay, attempt budget

        Returns:
            Queue-assigned job id

        Raises:
            InvalidJobSpec: Neither keyword nor URL, or invalid options
        """
        job = self.build_job(spec, options)
        job_id = await self.backend.add(job)
        metrics.record_job_enqueued()
        logger.info(
            f"Job added to queue: {job_id} ({job.label}, max_pages={job.max_pages}, "
            f"priority={job.effective_priority}, delay_ms={job.delay_ms or 0})"
        )
        return job_id

    async def enqueue_bulk(
        self,
        specs: Iterable[SpecLike],
        options: Optional[JobOptions] = None,
    ) -> List[str]:
        """
        Add many jobs as one batch.

        Every spec is validated before anything is written, so one invalid
        entry rejects the whole batch.
        """
        jobs = [self.build_job(spec, options) for spec in specs]
        if not jobs:
            return []

        ids = await self.backend.add_bulk(jobs)
        metrics.record_job_enqueued(len(ids))
        logger.info(f"Bulk jobs added to queue: {len(ids)}")
        return ids

    async def counts(self) -> Dict[str, int]:
        """Number of jobs per lifecycle state."""
        counts = await self.backend.counts()
        metrics.update_queue_counts(counts)
        return counts

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.backend.get(job_id)

    async def get_failed(self, start: int = 0, end: int = 10) -> List[Job]:
        """Most recently failed jobs, newest first."""
        return await self.backend.list_jobs(JobState.FAILED, start, end)

    async def retry_job(self, job_id: str) -> bool:
        """Move a failed job back to waiting."""
        moved = await self.backend.requeue(job_id)
        if moved:
            logger.info(f"Job retried: {job_id}")
        else:
            logger.warning(f"Job {job_id} is not in the failed state")
        return moved

    async def clean_old_jobs(
        self,
        completed_grace_seconds: Optional[float] = None,
        failed_grace_seconds: Optional[float] = None,
    ) -> Dict[str, int]:
        """Remove finished jobs older than their retention window."""
        if completed_grace_seconds is None:
            completed_grace_seconds = self.settings.remove_on_complete_age_seconds
        if failed_grace_seconds is None:
            failed_grace_seconds = self.settings.remove_on_fail_age_seconds

        removed = {
            JobState.COMPLETED.value: await self.backend.clean(JobState.COMPLETED, completed_grace_seconds),
            JobState.FAILED.value: await self.backend.clean(JobState.FAILED, failed_grace_seconds),
        }
        logger.info(f"Cleaned old jobs: {removed}")
        return removed

    async def close(self) -> None:
        await self.backend.close()


def load_bulk_file(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """
    Read job specs from a JSON file.

    Accepts ``{"jobs": [...]}`` or a bare list. Each entry may carry an
    ``options`` object with ``priority``/``delay_ms``/``attempts``.

    Raises:
        InvalidJobSpec: If the file does not hold a list of jobs
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    jobs = data.get("jobs") if isinstance(data, dict) else data
    if not isinstance(jobs, list):
        raise InvalidJobSpec(f"{path}: expected a list of jobs or an object with a 'jobs' list")
    return jobs


async def enqueue_entries(producer: JobProducer, entries: List[Dict[str, Any]]) -> List[str]:
    """
    Enqueue file entries, batching those that share the same options.

    All entries are validated before the first batch is written.
    """
    batches: Dict[str, List[Dict[str, Any]]] = {}
    for entry in entries:
        options = entry.get("options") if isinstance(entry, dict) else None
        producer.build_job(entry, _as_options(options))
        batches.setdefault(json.dumps(options or {}, sort_keys=True), []).append(entry)

    ids: List[str] = []
    for key, batch in batches.items():
        ids.extend(await producer.enqueue_bulk(batch, _as_options(json.loads(key))))
    return ids
