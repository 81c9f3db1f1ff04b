"""Worker process entry point — one pool per queue.

Learn: Workers run in their own process, separate from the API server,
so a crash in processing never takes ingestion down. The same pools can
also run inside the API process (``run_workers_in_process``) for local
development with the in-memory backends.

Usage:
    errorwatch worker                # all queues
    errorwatch worker events alerts  # a subset
"""

import asyncio
import signal
from functools import partial
from typing import Iterable, Optional

import redis.asyncio as aioredis
import structlog

from errorwatch.config import Settings, settings
from errorwatch.logconfig import setup_logging
from errorwatch.processing.alerts import process_alert
from errorwatch.processing.context import ProcessingContext
from errorwatch.processing.events import process_event
from errorwatch.processing.replays import process_replay
from errorwatch.queue.jobs import Job, QueueName, queue_name
from errorwatch.queue.worker import WorkerPool

logger = structlog.get_logger()

HANDLERS = {
    QueueName.EVENTS: process_event,
    QueueName.ALERTS: process_alert,
    QueueName.REPLAYS: process_replay,
}


async def _handle(handler, ctx: ProcessingContext, job: Job) -> None:
    await handler(ctx, job)


def build_pools(
    ctx: ProcessingContext,
    config: Settings,
    names: Optional[Iterable["str | QueueName"]] = None,
) -> list[WorkerPool]:
    selected = [queue_name(n) for n in names] if names else list(QueueName)
    pools = []
    for name in selected:
        spec = ctx.queues.specs[name]
        pools.append(
            WorkerPool(
                ctx.queues.get(name),
                partial(_handle, HANDLERS[name], ctx),
                concurrency=spec.concurrency,
                attempts=spec.attempts,
                backoff_seconds=spec.backoff_seconds,
                poll_interval=config.worker_poll_interval,
            )
        )
    return pools


async def run_pools(pools: list[WorkerPool]) -> None:
    await asyncio.gather(*(pool.run() for pool in pools))


async def run(names: Optional[list[str]] = None, config: Settings = settings) -> None:
    """Run worker pools until SIGINT/SIGTERM."""
    if config.queue_backend != "redis":
        raise RuntimeError("Standalone workers need the redis queue backend")

    redis = aioredis.from_url(config.redis_url, decode_responses=True)
    ctx = ProcessingContext.from_settings(config, redis)
    pools = build_pools(ctx, config, names)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: [pool.stop() for pool in pools])

    logger.info(
        "workers.starting",
        queues=[pool.name for pool in pools],
        consumer=config.worker_id,
    )
    try:
        await run_pools(pools)
    finally:
        logger.info("workers.stopped", stats={pool.name: pool.get_stats() for pool in pools})
        await ctx.aclose()
        await redis.aclose()


def main() -> None:
    setup_logging(settings.log_level, json_output=settings.environment == "production")
    asyncio.run(run())


if __name__ == "__main__":
    main()
