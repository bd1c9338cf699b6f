"""Tests for the in-process queue backend and the producer."""

import json

import pytest

from fakes import make_settings
from scrape_engine.errors import ErrorKind, InvalidJobSpec, LeaseLostError
from scrape_engine.queue.backend import MemoryQueueBackend, create_backend
from scrape_engine.queue.models import Job, JobOptions, JobSpec, JobState, LastError
from scrape_engine.queue.producer import JobProducer, enqueue_entries, load_bulk_file


class Clock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _backend(clock=None, **overrides) -> MemoryQueueBackend:
    return MemoryQueueBackend(make_settings(**overrides), clock=clock or Clock())


def _error(kind=ErrorKind.TIMEOUT, attempt=1) -> LastError:
    return LastError(kind=kind, message="boom", attempt=attempt)


@pytest.mark.asyncio
async def test_priority_then_fifo():
    backend = _backend()
    producer = JobProducer(backend, make_settings())

    low = await producer.enqueue({"keyword": "low"}, JobOptions(priority=5))
    first = await producer.enqueue({"keyword": "first"})
    second = await producer.enqueue({"keyword": "second"})

    claimed = [(await backend.claim("w", 1000)).id for _ in range(3)]
    assert claimed == [first, second, low]
    assert await backend.claim("w", 1000) is None


@pytest.mark.asyncio
async def test_delayed_job_promoted_when_due():
    clock = Clock()
    backend = _backend(clock)
    job_id = await backend.add(Job.create(JobSpec(keyword="later"), JobOptions(delay_ms=5000)))

    assert (await backend.counts())["delayed"] == 1
    assert await backend.claim("w", 1000) is None

    clock.advance(5)
    claimed = await backend.claim("w", 1000)
    assert claimed.id == job_id
    assert claimed.state == JobState.ACTIVE


@pytest.mark.asyncio
async def test_each_job_claimed_once():
    backend = _backend()
    await backend.add(Job.create(JobSpec(keyword="only")))

    first = await backend.claim("w1", 1000)
    second = await backend.claim("w2", 1000)

    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_lease_token_guards_mutations():
    clock = Clock()
    backend = _backend(clock)
    await backend.add(Job.create(JobSpec(keyword="x")))
    job = await backend.claim("w1", 1000)

    clock.advance(2)
    recovery = await backend.recover_stalled(max_stalled_count=2)
    assert recovery.recovered == [job.id]

    again = await backend.claim("w2", 1000)
    assert again.id == job.id
    assert again.lock_token != job.lock_token

    with pytest.raises(LeaseLostError):
        await backend.complete(job, {"success": True})
    with pytest.raises(LeaseLostError):
        await backend.extend_lease(job, 1000)

    await backend.complete(again, {"success": True})
    assert (await backend.get(job.id)).state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_extend_lease_prevents_stall():
    clock = Clock()
    backend = _backend(clock)
    await backend.add(Job.create(JobSpec(keyword="x")))
    job = await backend.claim("w", 1000)

    clock.advance(0.8)
    await backend.extend_lease(job, 1000)
    clock.advance(0.8)

    recovery = await backend.recover_stalled(max_stalled_count=2)
    assert recovery.recovered == []


@pytest.mark.asyncio
async def test_stalled_too_often_fails():
    clock = Clock()
    backend = _backend(clock)
    job_id = await backend.add(Job.create(JobSpec(keyword="x")))

    for _ in range(2):
        await backend.claim("w", 1000)
        clock.advance(2)
        assert (await backend.recover_stalled(max_stalled_count=1)) is not None

    stored = await backend.get(job_id)
    assert stored.state == JobState.FAILED
    assert stored.last_error.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_retry_later_counts_attempt_and_delays():
    clock = Clock()
    backend = _backend(clock)
    await backend.add(Job.create(JobSpec(keyword="x")))
    job = await backend.claim("w", 1000)

    await backend.retry_later(job, _error(), delay_ms=3000)
    assert job.attempts_made == 1
    assert job.state == JobState.DELAYED
    assert await backend.claim("w", 1000) is None

    clock.advance(3)
    again = await backend.claim("w", 1000)
    assert again.attempts_made == 1
    assert again.last_error.message == "boom"


@pytest.mark.asyncio
async def test_fail_and_requeue():
    backend = _backend()
    producer = JobProducer(backend, make_settings())
    job_id = await producer.enqueue({"keyword": "x"})
    job = await backend.claim("w", 1000)
    await backend.fail(job, _error(ErrorKind.BLOCKED_OR_BANNED))

    failed = await producer.get_failed()
    assert [j.id for j in failed] == [job_id]
    assert failed[0].last_error.kind == ErrorKind.BLOCKED_OR_BANNED

    assert await producer.retry_job(job_id) is True
    assert await producer.retry_job(job_id) is False
    restored = await backend.claim("w", 1000)
    assert restored.id == job_id
    assert restored.attempts_made == 0


@pytest.mark.asyncio
async def test_retention_count_prunes_oldest():
    clock = Clock()
    backend = _backend(clock, remove_on_complete_count=2)
    for i in range(3):
        await backend.add(Job.create(JobSpec(keyword=f"k{i}")))

    for _ in range(3):
        job = await backend.claim("w", 1000)
        await backend.complete(job, {"success": True})
        clock.advance(1)

    completed = await backend.list_jobs(JobState.COMPLETED)
    assert [j.keyword for j in completed] == ["k2", "k1"]


@pytest.mark.asyncio
async def test_clean_removes_finished_past_grace():
    clock = Clock()
    backend = _backend(clock)
    producer = JobProducer(backend, make_settings())
    await producer.enqueue({"keyword": "x"})
    job = await backend.claim("w", 1000)
    await backend.complete(job, {"success": True})

    assert await producer.clean_old_jobs(completed_grace_seconds=60) == {"completed": 0, "failed": 0}
    clock.advance(61)
    assert await producer.clean_old_jobs(completed_grace_seconds=60) == {"completed": 1, "failed": 0}


@pytest.mark.asyncio
@pytest.mark.parametrize("state", [JobState.WAITING, JobState.DELAYED, JobState.ACTIVE])
async def test_clean_refuses_unfinished_states(state):
    clock = Clock()
    backend = _backend(clock)
    await backend.add(Job.create(JobSpec(keyword="waiting")))
    await backend.add(Job.create(JobSpec(keyword="later"), JobOptions(delay_ms=5000)))
    await backend.add(Job.create(JobSpec(keyword="busy")))
    await backend.claim("w", 1000)

    clock.advance(3600)
    with pytest.raises(ValueError, match="Can only clean completed or failed jobs"):
        await backend.clean(state, grace_seconds=0)

    counts = await backend.counts()
    assert counts["waiting"] + counts["delayed"] + counts["active"] == 3


@pytest.mark.asyncio
async def test_counts_cover_every_state():
    backend = _backend()
    counts = await backend.counts()
    assert set(counts) == {"waiting", "delayed", "active", "completed", "failed"}


@pytest.mark.asyncio
async def test_invalid_spec_is_rejected_before_enqueue():
    backend = _backend()
    producer = JobProducer(backend, make_settings())

    with pytest.raises(InvalidJobSpec):
        await producer.enqueue({"maxPages": 2})
    assert sum((await backend.counts()).values()) == 0


@pytest.mark.asyncio
async def test_bulk_rejects_whole_batch():
    backend = _backend()
    producer = JobProducer(backend, make_settings())

    with pytest.raises(InvalidJobSpec):
        await producer.enqueue_bulk([{"keyword": "ok"}, {"maxPages": 1}])
    assert sum((await backend.counts()).values()) == 0

    ids = await producer.enqueue_bulk([{"keyword": "a"}, {"url": "https://x.test"}])
    assert len(ids) == 2
    assert (await backend.get(ids[0])).max_pages == make_settings().max_pages_per_job


@pytest.mark.asyncio
async def test_bulk_file_groups_options(tmp_path):
    path = tmp_path / "jobs.json"
    path.write_text(
        json.dumps(
            {
                "jobs": [
                    {"keyword": "a", "maxPages": 2},
                    {"keyword": "b", "options": {"priority": 1}},
                    {"keyword": "c", "options": {"delay_ms": 1000}},
                ]
            }
        )
    )
    backend = _backend()
    producer = JobProducer(backend, make_settings())

    ids = await enqueue_entries(producer, load_bulk_file(path))

    assert len(ids) == 3
    counts = await backend.counts()
    assert counts["waiting"] == 2
    assert counts["delayed"] == 1
    jobs = {j.keyword: j for j in [await backend.get(i) for i in ids]}
    assert jobs["a"].max_pages == 2
    assert jobs["b"].priority == 1


def test_bulk_file_must_hold_a_list(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"jobs": "nope"}))
    with pytest.raises(InvalidJobSpec):
        load_bulk_file(path)


def test_create_backend_rejects_unknown():
    with pytest.raises(ValueError):
        create_backend(make_settings(queue_backend="carrier-pigeon"))
