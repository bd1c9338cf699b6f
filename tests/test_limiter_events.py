"""Tests for the job-start limiter and the worker event bus."""

import pytest

from scrape_engine.worker.events import EventBus, JobCompleted, JobStalled, WorkerEvent
from scrape_engine.worker.limiter import SlidingWindowLimiter


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_limiter_blocks_past_window_capacity():
    clock = Clock()
    limiter = SlidingWindowLimiter(2, 1000, clock=clock)

    await limiter.acquire()
    clock.now += 0.25
    await limiter.acquire()

    assert limiter.delay_needed() == pytest.approx(0.75)

    clock.now += 0.75
    assert limiter.delay_needed() == 0
    await limiter.acquire()
    assert limiter.delay_needed() == pytest.approx(0.25)


def test_limiter_rejects_zero_capacity():
    with pytest.raises(ValueError):
        SlidingWindowLimiter(0, 1000)


@pytest.mark.asyncio
async def test_event_bus_dispatch_and_isolation():
    bus = EventBus()
    seen = []
    every = []

    def broken(event):
        raise RuntimeError("handler bug")

    async def record(event):
        seen.append(event.job_id)

    bus.subscribe(JobCompleted, broken)
    bus.subscribe(JobCompleted, record)
    bus.subscribe(WorkerEvent, every.append)

    await bus.publish(JobCompleted("1", total_products=3, duration_ms=10))
    await bus.publish(JobStalled("2"))

    assert seen == ["1"]
    assert [e.job_id for e in every] == ["1", "2"]
    assert len(bus.drain()) == 2
    assert bus.drain() == []
