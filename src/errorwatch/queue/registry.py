"""Queue definitions and the producer-side ingress.

Learn: Each queue has its own concurrency ceiling, attempt bound and
backoff base, all read from settings:

    events   10 workers   3 attempts   1s exponential
    alerts    5 workers   5 attempts   5s exponential
    replays   3 workers   3 attempts   2s exponential

QueueSet is what producers hold. ``enqueue(queue_name, payload)`` is
fire-and-forget from their side: it returns the job id once the job is
stored, and never waits for processing.
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis

from errorwatch.config import Settings
from errorwatch.queue.backends import JobQueue, MemoryJobQueue, Payload, RedisJobQueue
from errorwatch.queue.jobs import QueueName, queue_name


@dataclass(frozen=True)
class QueueSpec:
    name: QueueName
    concurrency: int
    attempts: int
    backoff_seconds: float


def queue_specs(settings: Settings) -> dict[QueueName, QueueSpec]:
    return {
        name: QueueSpec(
            name=name,
            concurrency=getattr(settings, f"{name.value}_concurrency"),
            attempts=getattr(settings, f"{name.value}_attempts"),
            backoff_seconds=getattr(settings, f"{name.value}_backoff_seconds"),
        )
        for name in QueueName
    }


class QueueSet:
    """The three named queues of one deployment."""

    def __init__(self, queues: dict[QueueName, JobQueue], specs: dict[QueueName, QueueSpec]):
        self.queues = queues
        self.specs = specs

    @classmethod
    def from_settings(
        cls, settings: Settings, redis: Optional[aioredis.Redis] = None
    ) -> "QueueSet":
        if settings.queue_backend == "redis":
            if redis is None:
                raise RuntimeError("The redis queue backend needs a Redis connection")
            queues: dict[QueueName, JobQueue] = {
                name: RedisJobQueue(
                    name,
                    redis,
                    consumer_id=settings.worker_id,
                    dead_ttl_seconds=settings.dead_job_ttl_seconds,
                )
                for name in QueueName
            }
        else:
            queues = {name: MemoryJobQueue(name) for name in QueueName}
        return cls(queues, queue_specs(settings))

    def get(self, name: "str | QueueName") -> JobQueue:
        return self.queues[queue_name(name)]

    async def enqueue(
        self, name: "str | QueueName", payload: Payload, job_id: Optional[str] = None
    ) -> str:
        return await self.get(name).enqueue(payload, job_id=job_id)

    async def stats(self) -> list[dict]:
        return [await queue.stats() for queue in self.queues.values()]
