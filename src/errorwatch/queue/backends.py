"""Queue backends — where jobs wait between enqueue and completion.

Learn: A backend only stores and moves jobs; retry policy and concurrency
live in the WorkerPool. A job is always in exactly one place:

    waiting → processing → (acked: gone)
                         → delayed → waiting        (retry after backoff)
                         → dead                     (attempts exhausted)

RedisJobQueue is the durable backend. Its Redis layout per queue:

    errorwatch:queue:{name}:waiting               LIST  job ids, FIFO
    errorwatch:queue:{name}:processing:{worker}   LIST  claimed by one consumer
    errorwatch:queue:{name}:delayed               ZSET  job id → due epoch
    errorwatch:queue:{name}:dead                  LIST  exhausted job ids
    errorwatch:queue:{name}:job:{id}              STR   job JSON

Claims use LMOVE, so a job is never in waiting and processing at once.
Enqueue (SET NX + LPUSH) and promotion of due retries (ZREM + RPUSH) run
as Lua scripts, so each of those moves is all-or-nothing. A consumer
that crashes leaves its jobs in its processing list; recover() puts
them back when that consumer id starts again (at-least-once).

MemoryJobQueue follows the same contract in-process. It is not durable
and exists for development and tests.
"""

import abc
import heapq
import itertools
import time
from collections import deque
from typing import Callable, Optional, Union

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel

from errorwatch.queue.jobs import Job, QueueName, parse_payload, queue_name

logger = structlog.get_logger()

Payload = Union[BaseModel, dict]

# KEYS: job key, waiting list. ARGV: job JSON, job id
ENQUEUE_SCRIPT = """
if redis.call("SET", KEYS[1], ARGV[1], "NX") then
    redis.call("LPUSH", KEYS[2], ARGV[2])
    return 1
end
return 0
"""

# KEYS: delayed zset, waiting list. ARGV: now, batch size
PROMOTE_SCRIPT = """
local due = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, ARGV[2])
for _, job_id in ipairs(due) do
    redis.call("ZREM", KEYS[1], job_id)
    redis.call("RPUSH", KEYS[2], job_id)
end
return #due
"""

PROMOTE_BATCH = 100


def _payload_dict(name: QueueName, payload: Payload) -> dict:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True)
    # Validate against the queue's schema before anything is stored
    return parse_payload(name, payload).model_dump(mode="json", by_alias=True)


class JobQueue(abc.ABC):
    """Storage contract shared by every queue backend."""

    def __init__(self, name: "str | QueueName"):
        self.name = queue_name(name)

    async def enqueue(self, payload: Payload, job_id: Optional[str] = None) -> str:
        """Validate and enqueue a payload. Returns the job id.

        Enqueueing an id that already exists is a no-op, which lets
        producers retry without creating duplicate jobs.
        """
        job = Job(queue_name=self.name, payload=_payload_dict(self.name, payload))
        if job_id:
            job.id = job_id
        if await self._store_new(job):
            logger.debug("queue.enqueued", queue=self.name.value, job_id=job.id)
        else:
            logger.debug("queue.duplicate_enqueue", queue=self.name.value, job_id=job.id)
        return job.id

    @abc.abstractmethod
    async def _store_new(self, job: Job) -> bool:
        """Store and make a job claimable; False if the id already exists."""

    @abc.abstractmethod
    async def claim(self) -> Optional[Job]:
        """Move the oldest waiting job to processing and return it."""

    @abc.abstractmethod
    async def ack(self, job: Job) -> None:
        """Remove a completed job."""

    @abc.abstractmethod
    async def retry(self, job: Job, delay: float) -> None:
        """Persist the job's updated state and redeliver it after ``delay``."""

    @abc.abstractmethod
    async def bury(self, job: Job) -> None:
        """Move a job to the dead list for manual inspection."""

    @abc.abstractmethod
    async def promote_due(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""

    @abc.abstractmethod
    async def recover(self) -> int:
        """Return this consumer's unfinished jobs to waiting."""

    @abc.abstractmethod
    async def dead_jobs(self, limit: int = 100) -> list[Job]:
        """Most recently buried jobs first."""

    @abc.abstractmethod
    async def stats(self) -> dict:
        """Counts per job state."""


# ─── Redis ────────────────────────────────────────────────


class RedisJobQueue(JobQueue):
    def __init__(
        self,
        name: "str | QueueName",
        redis: aioredis.Redis,
        consumer_id: str = "worker-1",
        dead_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name)
        self.redis = redis
        self.consumer_id = consumer_id
        self.dead_ttl_seconds = dead_ttl_seconds
        self._clock = clock

        prefix = f"errorwatch:queue:{self.name.value}"
        self.waiting_key = f"{prefix}:waiting"
        self.processing_key = f"{prefix}:processing:{consumer_id}"
        self.delayed_key = f"{prefix}:delayed"
        self.dead_key = f"{prefix}:dead"
        self._job_prefix = f"{prefix}:job:"

    def job_key(self, job_id: str) -> str:
        return self._job_prefix + job_id

    async def _store_new(self, job: Job) -> bool:
        created = await self.redis.eval(
            ENQUEUE_SCRIPT, 2, self.job_key(job.id), self.waiting_key, job.to_json(), job.id
        )
        return bool(created)

    async def claim(self) -> Optional[Job]:
        job_id = await self.redis.lmove(
            self.waiting_key, self.processing_key, "RIGHT", "LEFT"
        )
        if job_id is None:
            return None
        raw = await self.redis.get(self.job_key(job_id))
        if raw is None:
            # Document expired or was deleted out from under the id
            logger.warning("queue.orphan_id", queue=self.name.value, job_id=job_id)
            await self.redis.lrem(self.processing_key, 1, job_id)
            return None
        return Job.from_json(raw)

    async def ack(self, job: Job) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, job.id)
            pipe.delete(self.job_key(job.id))
            await pipe.execute()

    async def retry(self, job: Job, delay: float) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self.job_key(job.id), job.to_json())
            pipe.zadd(self.delayed_key, {job.id: self._clock() + delay})
            pipe.lrem(self.processing_key, 1, job.id)
            await pipe.execute()

    async def bury(self, job: Job) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self.job_key(job.id), job.to_json(), ex=self.dead_ttl_seconds)
            pipe.lpush(self.dead_key, job.id)
            pipe.ltrim(self.dead_key, 0, 9999)
            pipe.lrem(self.processing_key, 1, job.id)
            await pipe.execute()

    async def promote_due(self) -> int:
        promoted = await self.redis.eval(
            PROMOTE_SCRIPT, 2, self.delayed_key, self.waiting_key, self._clock(), PROMOTE_BATCH
        )
        return int(promoted)

    async def recover(self) -> int:
        recovered = 0
        while await self.redis.lmove(
            self.processing_key, self.waiting_key, "LEFT", "RIGHT"
        ):
            recovered += 1
        if recovered:
            logger.info(
                "queue.recovered",
                queue=self.name.value,
                consumer=self.consumer_id,
                jobs=recovered,
            )
        return recovered

    async def dead_jobs(self, limit: int = 100) -> list[Job]:
        ids = await self.redis.lrange(self.dead_key, 0, limit - 1)
        jobs = []
        for job_id in ids:
            raw = await self.redis.get(self.job_key(job_id))
            if raw is not None:
                jobs.append(Job.from_json(raw))
        return jobs

    async def stats(self) -> dict:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.waiting_key)
            pipe.llen(self.processing_key)
            pipe.zcard(self.delayed_key)
            pipe.llen(self.dead_key)
            waiting, processing, delayed, dead = await pipe.execute()
        return {
            "queue": self.name.value,
            "waiting": waiting,
            "processing": processing,
            "delayed": delayed,
            "dead": dead,
        }


# ─── In-process ───────────────────────────────────────────


class MemoryJobQueue(JobQueue):
    def __init__(
        self,
        name: "str | QueueName",
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(name)
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._waiting: deque[str] = deque()
        self._processing: set[str] = set()
        self._delayed: list[tuple[float, int, str]] = []
        self._dead: list[str] = []
        self._seq = itertools.count()

    async def _store_new(self, job: Job) -> bool:
        if job.id in self._jobs:
            return False
        self._jobs[job.id] = job.model_copy(deep=True)
        self._waiting.append(job.id)
        return True

    async def claim(self) -> Optional[Job]:
        if not self._waiting:
            return None
        job_id = self._waiting.popleft()
        self._processing.add(job_id)
        return self._jobs[job_id].model_copy(deep=True)

    async def ack(self, job: Job) -> None:
        self._processing.discard(job.id)
        self._jobs.pop(job.id, None)

    async def retry(self, job: Job, delay: float) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)
        self._processing.discard(job.id)
        heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), job.id))

    async def bury(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)
        self._processing.discard(job.id)
        self._dead.append(job.id)

    async def promote_due(self) -> int:
        now = self._clock()
        promoted = 0
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            self._waiting.append(job_id)
            promoted += 1
        return promoted

    async def recover(self) -> int:
        recovered = len(self._processing)
        self._waiting.extendleft(sorted(self._processing))
        self._processing.clear()
        return recovered

    async def dead_jobs(self, limit: int = 100) -> list[Job]:
        return [self._jobs[job_id] for job_id in reversed(self._dead[-limit:])]

    async def stats(self) -> dict:
        return {
            "queue": self.name.value,
            "waiting": len(self._waiting),
            "processing": len(self._processing),
            "delayed": len(self._delayed),
            "dead": len(self._dead),
        }
