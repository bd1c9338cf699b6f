"""Tests for the session pool."""

import asyncio

import pytest

from fakes import FakeSessionFactory, make_settings
from scrape_engine.browser.pool import PoolState, SessionPool
from scrape_engine.errors import PoolCloseError, PoolClosedError


async def _ready_pool(capacity: int = 2, **factory_kwargs) -> SessionPool:
    pool = SessionPool(FakeSessionFactory(**factory_kwargs), capacity, make_settings())
    await pool.initialize()
    return pool


@pytest.mark.asyncio
@pytest.mark.parametrize("capacity,extra", [(1, 3), (2, 4), (4, 1)])
async def test_capacity_never_exceeded(capacity, extra):
    pool = await _ready_pool(capacity)
    current = 0
    peak = 0

    async def task(session):
        nonlocal current, peak
        current += 1
        peak = max(peak, current)
        await asyncio.sleep(0.01)
        current -= 1
        return session.id

    results = await asyncio.gather(*(pool.acquire_and_run(task) for _ in range(capacity + extra)))

    assert len(results) == capacity + extra
    assert peak <= capacity
    assert pool.active_sessions == 0
    assert len(pool.factory.sessions) <= capacity


@pytest.mark.asyncio
async def test_session_state_cleared_after_success():
    pool = await _ready_pool(capacity=1)

    async def mark(session):
        session.storage["cookie"] = "marker"

    async def inspect(session):
        return dict(session.storage)

    await pool.acquire_and_run(mark)
    seen = await pool.acquire_and_run(inspect)

    assert seen == {}
    assert len(pool.factory.sessions) == 1


@pytest.mark.asyncio
async def test_session_state_cleared_after_failure():
    pool = await _ready_pool(capacity=1)

    async def mark_and_fail(session):
        session.storage["cookie"] = "marker"
        raise ValueError("boom")

    async def inspect(session):
        return dict(session.storage)

    with pytest.raises(ValueError):
        await pool.acquire_and_run(mark_and_fail)

    assert await pool.acquire_and_run(inspect) == {}
    assert pool.active_sessions == 0


@pytest.mark.asyncio
async def test_session_reset_on_cancellation():
    pool = await _ready_pool(capacity=1)
    started = asyncio.Event()

    async def hang(session):
        session.storage["cookie"] = "marker"
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(pool.acquire_and_run(hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    session = pool.factory.sessions[0]
    assert session.storage == {}
    assert pool.active_sessions == 0


@pytest.mark.asyncio
async def test_failed_reset_destroys_session():
    pool = await _ready_pool(capacity=1, fail_reset=True)

    async def noop(session):
        return session

    first = await pool.acquire_and_run(noop)
    second = await pool.acquire_and_run(noop)

    assert first is not second
    assert first.closed is True


@pytest.mark.asyncio
async def test_acquire_before_initialize_is_refused():
    pool = SessionPool(FakeSessionFactory(), 1, make_settings())

    async def noop(session):
        return None

    with pytest.raises(PoolClosedError):
        await pool.acquire_and_run(noop)


@pytest.mark.asyncio
async def test_close_rejects_new_work_and_closes_sessions():
    pool = await _ready_pool(capacity=2)

    async def noop(session):
        return None

    await pool.acquire_and_run(noop)
    await pool.close()

    assert pool.state == PoolState.CLOSED
    assert pool.factory.closed == 1
    assert all(s.closed for s in pool.factory.sessions)
    with pytest.raises(PoolClosedError):
        await pool.acquire_and_run(noop)

    # Second close is a no-op
    await pool.close()
    assert pool.factory.closed == 1


@pytest.mark.asyncio
async def test_close_waits_for_in_flight_task():
    pool = await _ready_pool(capacity=1)
    finished = []

    async def slow(session):
        await asyncio.sleep(0.05)
        finished.append(session.id)

    task = asyncio.create_task(pool.acquire_and_run(slow))
    await asyncio.sleep(0)
    await pool.close(timeout=1)
    await task

    assert finished
    assert pool.state == PoolState.CLOSED


@pytest.mark.asyncio
async def test_close_failure_raises_and_force_kill_recovers():
    pool = await _ready_pool(capacity=1, close_error=RuntimeError("browser hung"))

    with pytest.raises(PoolCloseError):
        await pool.close(timeout=0.1)
    assert pool.state == PoolState.DRAINING

    await pool.force_kill()
    assert pool.state == PoolState.CLOSED
    assert pool.factory.killed == 1


@pytest.mark.asyncio
async def test_status_snapshot():
    pool = SessionPool(FakeSessionFactory(), 3, make_settings())
    status = pool.status()
    assert status.initialized is False
    assert status.capacity == 3

    await pool.initialize()
    started = asyncio.Event()
    release = asyncio.Event()

    async def hold(session):
        started.set()
        await release.wait()

    task = asyncio.create_task(pool.acquire_and_run(hold))
    await started.wait()
    status = pool.status()
    assert status.initialized is True
    assert status.active_sessions == 1
    assert status.state == "ready"

    release.set()
    await task
