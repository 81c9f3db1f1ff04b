"""Worker pool — consumes one queue with bounded concurrency.

Learn: One pool per queue. The claim loop acquires a semaphore slot
*before* claiming, so at most ``concurrency`` jobs of this queue are ever
in flight; everything else stays in the queue backend (backpressure on
the database and on outbound webhooks).

Each claimed job runs in its own task:

    success           → ack (exactly once)
    failure           → attempts += 1, redeliver after base × 2^(n-1) seconds
    attempts used up  → bury in the dead list + logger.error
    PermanentJobError → bury after MIN_ATTEMPTS instead of the full budget

Every failed job is redelivered at least once before it is buried.

A failing job never blocks the loop; other jobs keep flowing while it
waits out its backoff.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog

from errorwatch.queue.backends import JobQueue
from errorwatch.queue.jobs import MIN_ATTEMPTS, Job, JobPayloadError

logger = structlog.get_logger()

JobHandler = Callable[[Job], Awaitable[None]]


class PermanentJobError(Exception):
    """Processing failed in a way that another attempt cannot fix."""


@dataclass
class WorkerStats:
    """Runtime statistics for monitoring."""
    processed: int = 0
    failed: int = 0
    retried: int = 0
    dead: int = 0
    in_flight: set = field(default_factory=set)
    peak_in_flight: int = 0
    started_at: Optional[datetime] = None


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int,
        attempts: int,
        backoff_seconds: float,
        max_backoff_seconds: float = 300.0,
        poll_interval: float = 0.5,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if attempts < MIN_ATTEMPTS:
            raise ValueError(f"attempts must be at least {MIN_ATTEMPTS}")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.poll_interval = poll_interval
        self.stats = WorkerStats()
        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._stop = asyncio.Event()

    @property
    def name(self) -> str:
        return self.queue.name.value

    def backoff_for(self, attempts: int) -> float:
        """Delay before redelivering a job that has failed ``attempts`` times."""
        delay = self.backoff_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self.max_backoff_seconds)

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Claim and execute jobs until stop(); then drain in-flight jobs."""
        self.stats.started_at = datetime.now(timezone.utc)
        self._stop.clear()
        await self.queue.recover()
        logger.info(
            "worker.started",
            queue=self.name,
            concurrency=self.concurrency,
            attempts=self.attempts,
        )

        try:
            while not self._stop.is_set():
                await self._slots.acquire()
                if self._stop.is_set():
                    self._slots.release()
                    break

                try:
                    await self.queue.promote_due()
                    job = await self.queue.claim()
                except Exception:
                    logger.exception("worker.claim_failed", queue=self.name)
                    self._slots.release()
                    await self._idle()
                    continue

                if job is None:
                    self._slots.release()
                    await self._idle()
                    continue

                task = asyncio.create_task(self._execute(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("worker.stopped", queue=self.name, **self.get_stats())

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _execute(self, job: Job) -> None:
        self.stats.in_flight.add(job.id)
        self.stats.peak_in_flight = max(
            self.stats.peak_in_flight, len(self.stats.in_flight)
        )
        try:
            try:
                await self.handler(job)
            except Exception as e:
                await self._handle_failure(job, e)
            else:
                await self.queue.ack(job)
                self.stats.processed += 1
                logger.debug("worker.job_completed", queue=self.name, job_id=job.id)
        except Exception:
            # The backend itself failed; the job stays in processing and is
            # returned to waiting by recover() on the next start.
            logger.exception("worker.backend_error", queue=self.name, job_id=job.id)
        finally:
            self.stats.in_flight.discard(job.id)
            self._slots.release()

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        self.stats.failed += 1
        job.attempts += 1
        job.last_error = f"{type(error).__name__}: {error}"
        permanent = isinstance(error, (PermanentJobError, JobPayloadError))

        limit = MIN_ATTEMPTS if permanent else self.attempts
        if job.attempts >= limit:
            await self.queue.bury(job)
            self.stats.dead += 1
            logger.error(
                "worker.job_dead",
                queue=self.name,
                job_id=job.id,
                attempts=job.attempts,
                error=job.last_error,
                permanent=permanent,
            )
            return

        delay = self.backoff_for(job.attempts)
        await self.queue.retry(job, delay)
        self.stats.retried += 1
        logger.warning(
            "worker.job_failed",
            queue=self.name,
            job_id=job.id,
            attempts=job.attempts,
            retry_in=delay,
            error=job.last_error,
        )

    def get_stats(self) -> dict:
        return {
            "processed": self.stats.processed,
            "failed": self.stats.failed,
            "retried": self.stats.retried,
            "dead": self.stats.dead,
            "in_flight": len(self.stats.in_flight),
            "peak_in_flight": self.stats.peak_in_flight,
            "concurrency": self.concurrency,
            "started_at": (
                self.stats.started_at.isoformat() if self.stats.started_at else None
            ),
        }
