"""Redis-backed job queue.

Layout under ``scrape:{queue}:``:

- ``id`` / ``seq``: counters for job ids and FIFO ordering
- ``job:{id}``: hash with the wire payload and queue bookkeeping
- ``waiting``: zset scored by ``priority * 2**32 + seq``
- ``delayed``: zset scored by the ready time (ms)
- ``active``: zset scored by the lease expiry (ms)
- ``completed`` / ``failed``: zsets scored by the finish time (ms)

State transitions that depend on lease ownership run as Lua scripts so
the token check and the move happen atomically.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

import redis.asyncio as redis

from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import ErrorKind, LeaseLostError
from scrape_engine.queue.backend import StalledRecovery
from scrape_engine.queue.models import Job, JobState, LastError

logger = logging.getLogger(__name__)

PRIORITY_SHIFT = 2 ** 32
# Lua renders numbers with 14 significant digits, so priority * 2**32 + seq
# must stay below 1e14 to round-trip exactly through ZADD
MAX_PRIORITY = 2 ** 14 - 1

# Moves due delayed jobs to waiting, then pops the best waiting job into active.
CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
    local jobKey = ARGV[5] .. id
    redis.call('ZREM', KEYS[2], id)
    local priority = tonumber(redis.call('HGET', jobKey, 'priority') or '0')
    local seq = redis.call('INCR', KEYS[4])
    redis.call('ZADD', KEYS[1], priority * 4294967296 + seq, id)
    redis.call('HSET', jobKey, 'state', 'waiting')
end

local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
    return false
end

local id = popped[1]
local jobKey = ARGV[5] .. id
redis.call('ZADD', KEYS[3], tonumber(ARGV[1]) + tonumber(ARGV[2]), id)
redis.call('HSET', jobKey, 'state', 'active', 'lock_token', ARGV[3], 'worker', ARGV[4], 'processed_at', ARGV[1])
return id
"""

# Shared ownership check: KEYS[1] is the job hash, ARGV[1] the lock token.
_OWNERSHIP_CHECK = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' or redis.call('HGET', KEYS[1], 'lock_token') ~= ARGV[1] then
    return 0
end
"""

EXTEND_SCRIPT = _OWNERSHIP_CHECK + """
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[2])
return 1
"""

# KEYS: job, active, completed. ARGV: token, id, now, result
COMPLETE_SCRIPT = _OWNERSHIP_CHECK + """
redis.call('ZREM', KEYS[2], ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[2])
redis.call('HSET', KEYS[1], 'state', 'completed', 'result', ARGV[4], 'finished_at', ARGV[3])
redis.call('HDEL', KEYS[1], 'lock_token', 'worker')
return 1
"""

# KEYS: job, active, failed. ARGV: token, id, now, data, attempts
FAIL_SCRIPT = _OWNERSHIP_CHECK + """
redis.call('ZREM', KEYS[2], ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[2])
redis.call('HSET', KEYS[1], 'state', 'failed', 'data', ARGV[4], 'attempts_made', ARGV[5], 'finished_at', ARGV[3])
redis.call('HDEL', KEYS[1], 'lock_token', 'worker')
return 1
"""

# KEYS: job, active, waiting, delayed, seq. ARGV: token, id, now, data, attempts, delay_ms
RETRY_SCRIPT = _OWNERSHIP_CHECK + """
redis.call('ZREM', KEYS[2], ARGV[2])
local delay = tonumber(ARGV[6])
local state = 'waiting'
if delay > 0 then
    state = 'delayed'
    redis.call('ZADD', KEYS[4], tonumber(ARGV[3]) + delay, ARGV[2])
else
    local priority = tonumber(redis.call('HGET', KEYS[1], 'priority') or '0')
    local seq = redis.call('INCR', KEYS[5])
    redis.call('ZADD', KEYS[3], priority * 4294967296 + seq, ARGV[2])
end
redis.call('HSET', KEYS[1], 'state', state, 'data', ARGV[4], 'attempts_made', ARGV[5])
redis.call('HDEL', KEYS[1], 'lock_token', 'worker')
return 1
"""

# KEYS: active, waiting, failed, seq. ARGV: now, max_stalled, job prefix
RECOVER_STALLED_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local recovered = {}
local failed = {}
for _, id in ipairs(expired) do
    local jobKey = ARGV[3] .. id
    redis.call('ZREM', KEYS[1], id)
    local stalled = redis.call('HINCRBY', jobKey, 'stalled_count', 1)
    redis.call('HDEL', jobKey, 'lock_token', 'worker')
    if stalled > tonumber(ARGV[2]) then
        redis.call('ZADD', KEYS[3], ARGV[1], id)
        redis.call('HSET', jobKey, 'state', 'failed', 'finished_at', ARGV[1])
        table.insert(failed, id)
    else
        local priority = tonumber(redis.call('HGET', jobKey, 'priority') or '0')
        local seq = redis.call('INCR', KEYS[4])
        redis.call('ZADD', KEYS[2], priority * 4294967296 + seq, id)
        redis.call('HSET', jobKey, 'state', 'waiting')
        table.insert(recovered, id)
    end
end
return {recovered, failed}
"""

# KEYS: job, failed, waiting, seq. ARGV: id
REQUEUE_SCRIPT = """
if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
    return 0
end
local priority = tonumber(redis.call('HGET', KEYS[1], 'priority') or '0')
local seq = redis.call('INCR', KEYS[4])
redis.call('ZADD', KEYS[3], priority * 4294967296 + seq, ARGV[1])
redis.call('HSET', KEYS[1], 'state', 'waiting', 'attempts_made', 0, 'stalled_count', 0)
redis.call('HDEL', KEYS[1], 'result', 'finished_at')
return 1
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisQueueBackend:
    """
    Priority queue with leases on top of Redis.

    Features:
    - Atomic claim (promotes due delayed jobs first)
    - Token-checked lease extension and state transitions
    - Transactional bulk insert
    - Stalled-lease recovery
    - Retention pruning of finished jobs
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        queue_name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize queue backend.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            queue_name: Queue name used in the key prefix (defaults to settings)
            settings: Settings instance (defaults to module settings)
        """
        self.settings = settings or default_settings
        self.redis_url = redis_url or self.settings.redis_url
        self.queue_name = queue_name or self.settings.queue_name
        self.prefix = f"scrape:{self.queue_name}:"
        self._redis: Optional[redis.Redis] = None
        self._scripts: Dict[str, Any] = {}

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def _state_key(self, state: JobState) -> str:
        return self._key(state.value)

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._scripts = {
                "claim": self._redis.register_script(CLAIM_SCRIPT),
                "extend": self._redis.register_script(EXTEND_SCRIPT),
                "complete": self._redis.register_script(COMPLETE_SCRIPT),
                "fail": self._redis.register_script(FAIL_SCRIPT),
                "retry": self._redis.register_script(RETRY_SCRIPT),
                "recover": self._redis.register_script(RECOVER_STALLED_SCRIPT),
                "requeue": self._redis.register_script(REQUEUE_SCRIPT),
            }
        return self._redis

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> float:
        """Round-trip latency in milliseconds."""
        client = await self._get_redis()
        started = time.perf_counter()
        await client.ping()
        latency = (time.perf_counter() - started) * 1000
        logger.debug(f"Redis ping: {latency:.1f}ms")
        return latency

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add(self, job: Job) -> str:
        return (await self.add_bulk([job]))[0]

    async def add_bulk(self, jobs: List[Job]) -> List[str]:
        """Insert all jobs in a single MULTI/EXEC transaction."""
        if not jobs:
            return []
        client = await self._get_redis()

        last_id = await client.incrby(self._key("id"), len(jobs))
        last_seq = await client.incrby(self._key("seq"), len(jobs))
        first_id = last_id - len(jobs) + 1
        first_seq = last_seq - len(jobs) + 1
        now = _now_ms()

        ids = []
        async with client.pipeline(transaction=True) as pipe:
            for offset, job in enumerate(jobs):
                job_id = str(first_id + offset)
                priority = min(job.effective_priority, MAX_PRIORITY)
                state = JobState.DELAYED if job.delay_ms else JobState.WAITING
                mapping = {
                    "data": json.dumps(job.to_wire()),
                    "state": state.value,
                    "priority": priority,
                    "attempts_made": job.attempts_made,
                    "stalled_count": 0,
                }
                if job.max_attempts is not None:
                    mapping["max_attempts"] = job.max_attempts
                pipe.hset(self._job_key(job_id), mapping=mapping)

                if state == JobState.DELAYED:
                    pipe.zadd(self._state_key(JobState.DELAYED), {job_id: now + job.delay_ms})
                else:
                    score = priority * PRIORITY_SHIFT + first_seq + offset
                    pipe.zadd(self._state_key(JobState.WAITING), {job_id: score})
                ids.append(job_id)
            await pipe.execute()

        logger.debug(f"Added {len(ids)} job(s) to {self.queue_name}")
        return ids

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, worker_id: str, lease_ms: int) -> Optional[Job]:
        await self._get_redis()
        token = uuid4().hex
        job_id = await self._scripts["claim"](
            keys=[
                self._state_key(JobState.WAITING),
                self._state_key(JobState.DELAYED),
                self._state_key(JobState.ACTIVE),
                self._key("seq"),
            ],
            args=[_now_ms(), lease_ms, token, worker_id, self._key("job:")],
        )
        if not job_id:
            return None

        job = await self.get(job_id)
        if job is None:
            logger.error(f"Claimed job {job_id} has no data")
            return None
        return job

    async def extend_lease(self, job: Job, lease_ms: int) -> None:
        await self._get_redis()
        ok = await self._scripts["extend"](
            keys=[self._job_key(job.id), self._state_key(JobState.ACTIVE)],
            args=[job.lock_token or "", job.id, _now_ms() + lease_ms],
        )
        if not ok:
            raise LeaseLostError(job.id)

    async def complete(self, job: Job, result: Dict[str, Any]) -> None:
        await self._get_redis()
        ok = await self._scripts["complete"](
            keys=[
                self._job_key(job.id),
                self._state_key(JobState.ACTIVE),
                self._state_key(JobState.COMPLETED),
            ],
            args=[job.lock_token or "", job.id, _now_ms(), json.dumps(result)],
        )
        if not ok:
            raise LeaseLostError(job.id)

        job.state = JobState.COMPLETED
        job.result = result
        await self._prune(
            JobState.COMPLETED,
            self.settings.remove_on_complete_age_seconds,
            self.settings.remove_on_complete_count,
        )

    async def fail(self, job: Job, last_error: LastError) -> None:
        await self._get_redis()
        attempts = job.attempts_made + 1
        data = {**job.to_wire(), "lastError": last_error.to_wire()}
        ok = await self._scripts["fail"](
            keys=[
                self._job_key(job.id),
                self._state_key(JobState.ACTIVE),
                self._state_key(JobState.FAILED),
            ],
            args=[job.lock_token or "", job.id, _now_ms(), json.dumps(data), attempts],
        )
        if not ok:
            raise LeaseLostError(job.id)

        job.state = JobState.FAILED
        job.attempts_made = attempts
        job.last_error = last_error
        await self._prune(
            JobState.FAILED,
            self.settings.remove_on_fail_age_seconds,
            self.settings.remove_on_fail_count,
        )

    async def retry_later(self, job: Job, last_error: LastError, delay_ms: int) -> None:
        await self._get_redis()
        attempts = job.attempts_made + 1
        data = {**job.to_wire(), "lastError": last_error.to_wire()}
        ok = await self._scripts["retry"](
            keys=[
                self._job_key(job.id),
                self._state_key(JobState.ACTIVE),
                self._state_key(JobState.WAITING),
                self._state_key(JobState.DELAYED),
                self._key("seq"),
            ],
            args=[job.lock_token or "", job.id, _now_ms(), json.dumps(data), attempts, int(delay_ms)],
        )
        if not ok:
            raise LeaseLostError(job.id)

        job.state = JobState.DELAYED if delay_ms > 0 else JobState.WAITING
        job.attempts_made = attempts
        job.last_error = last_error

    async def recover_stalled(self, max_stalled_count: int) -> StalledRecovery:
        """Return expired leases to waiting; fail jobs that stalled too often."""
        client = await self._get_redis()
        recovered, failed = await self._scripts["recover"](
            keys=[
                self._state_key(JobState.ACTIVE),
                self._state_key(JobState.WAITING),
                self._state_key(JobState.FAILED),
                self._key("seq"),
            ],
            args=[_now_ms(), max_stalled_count, self._key("job:")],
        )

        for job_id in failed:
            job = await self.get(job_id)
            if job is None:
                continue
            last_error = LastError(
                kind=ErrorKind.TIMEOUT,
                message="job stalled more than allowable limit",
                attempt=job.attempts_made,
            )
            data = {**job.to_wire(), "lastError": last_error.to_wire()}
            await client.hset(self._job_key(job_id), "data", json.dumps(data))

        return StalledRecovery(recovered=list(recovered), failed=list(failed))

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    async def counts(self) -> Dict[str, int]:
        client = await self._get_redis()
        async with client.pipeline(transaction=False) as pipe:
            for state in JobState:
                pipe.zcard(self._state_key(state))
            values = await pipe.execute()
        return {state.value: int(count) for state, count in zip(JobState, values)}

    async def get(self, job_id: str) -> Optional[Job]:
        client = await self._get_redis()
        fields = await client.hgetall(self._job_key(job_id))
        if not fields or "data" not in fields:
            return None
        return self._load_job(job_id, fields)

    def _load_job(self, job_id: str, fields: Dict[str, str]) -> Job:
        job = Job.from_wire(json.loads(fields["data"]), job_id=job_id)
        job.state = JobState(fields.get("state", JobState.WAITING.value))
        job.attempts_made = int(fields.get("attempts_made", 0))
        job.stalled_count = int(fields.get("stalled_count", 0))
        job.lock_token = fields.get("lock_token")
        if fields.get("max_attempts"):
            job.max_attempts = int(fields["max_attempts"])
        if fields.get("result"):
            job.result = json.loads(fields["result"])
        return job

    async def list_jobs(self, state: JobState, start: int = 0, end: int = -1) -> List[Job]:
        client = await self._get_redis()
        key = self._state_key(state)
        if state in (JobState.COMPLETED, JobState.FAILED):
            ids = await client.zrevrange(key, start, end)
        else:
            ids = await client.zrange(key, start, end)

        jobs = []
        for job_id in ids:
            job = await self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def requeue(self, job_id: str) -> bool:
        """Move a failed job back to waiting with a fresh attempt budget."""
        await self._get_redis()
        moved = await self._scripts["requeue"](
            keys=[
                self._job_key(job_id),
                self._state_key(JobState.FAILED),
                self._state_key(JobState.WAITING),
                self._key("seq"),
            ],
            args=[job_id],
        )
        return bool(moved)

    async def clean(self, state: JobState, grace_seconds: float) -> int:
        """Remove finished jobs older than ``grace_seconds``."""
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Can only clean completed or failed jobs, not {state.value}")
        client = await self._get_redis()
        cutoff = _now_ms() - int(grace_seconds * 1000)
        ids = await client.zrangebyscore(self._state_key(state), "-inf", cutoff)
        await self._remove(state, ids)
        return len(ids)

    async def _prune(self, state: JobState, max_age_seconds: int, max_count: int) -> None:
        client = await self._get_redis()
        key = self._state_key(state)
        cutoff = _now_ms() - max_age_seconds * 1000
        expired = await client.zrangebyscore(key, "-inf", cutoff)
        overflow = await client.zrevrange(key, max_count, -1)
        stale = set(expired) | set(overflow)
        if stale:
            await self._remove(state, list(stale))
            logger.debug(f"Pruned {len(stale)} {state.value} job(s)")

    async def _remove(self, state: JobState, ids: List[str]) -> None:
        if not ids:
            return
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._state_key(state), *ids)
            pipe.delete(*[self._job_key(job_id) for job_id in ids])
            await pipe.execute()
