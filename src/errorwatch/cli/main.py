"""ErrorWatch CLI — run the server and workers, watch live notifications.

Usage:
    errorwatch serve                         # API + gateway + SSE (uvicorn)
    errorwatch worker                        # all worker pools
    errorwatch worker events alerts          # a subset of queues
    errorwatch queues                        # queue depths from /api/v1/health
    errorwatch dead events                   # buried jobs of one queue
    errorwatch tail ORG_ID --cookie TOKEN    # print live notifications
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:3333"


def _api_url() -> str:
    return os.environ.get("ERRORWATCH_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when already inside an event loop (CliRunner in
    async tests).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """columns: list of (header, dict_key, width)"""
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "-"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


_TYPE_COLORS = {
    "issue:new": "red",
    "issue:regressed": "magenta",
    "issue:updated": "yellow",
    "alert:triggered": "red",
    "transaction:new": "cyan",
    "replay:new": "blue",
    "log:new": "white",
}


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(prog_name="errorwatch")
def main():
    """ErrorWatch — error ingestion, queues and live notifications."""


@main.command()
@click.option("--host", default=None, help="Bind address (default: settings.host)")
@click.option("--port", "-p", type=int, default=None, help="Port (default: settings.port)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the HTTP server."""
    import uvicorn

    from errorwatch.config import settings
    from errorwatch.logconfig import setup_logging

    setup_logging(settings.log_level, json_output=settings.environment == "production")
    uvicorn.run(
        "errorwatch.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@main.command()
@click.argument("queues", nargs=-1)
def worker(queues: tuple[str, ...]):
    """Run worker pools for QUEUES (default: events, alerts, replays)."""
    from errorwatch.config import settings
    from errorwatch.logconfig import setup_logging
    from errorwatch.queue.jobs import UnknownQueueError, queue_name
    from errorwatch.queue.runner import run

    try:
        names = [queue_name(q).value for q in queues]
    except UnknownQueueError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    setup_logging(settings.log_level, json_output=settings.environment == "production")
    try:
        _run(run(names or None))
    except RuntimeError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)


@main.command()
def queues():
    """Show queue depths reported by the server."""

    async def _queues():
        async with _client() as c:
            r = await c.get("/api/v1/health")
            r.raise_for_status()
            return r.json()

    try:
        health = _run(_queues())
    except httpx.HTTPError as e:
        click.secho(f"Error: cannot reach {_api_url()} ({e})", fg="red", err=True)
        sys.exit(1)

    stats = health.get("queues")
    if not isinstance(stats, list):
        click.secho(f"Queues unavailable: {stats}", fg="red", err=True)
        sys.exit(1)
    _print_table(
        stats,
        [
            ("QUEUE", "queue", 10),
            ("WAITING", "waiting", 8),
            ("ACTIVE", "processing", 8),
            ("DELAYED", "delayed", 8),
            ("DEAD", "dead", 8),
        ],
    )


@main.command()
@click.argument("queue")
@click.option("--limit", "-l", default=20, help="Max jobs to show")
def dead(queue: str, limit: int):
    """List jobs in QUEUE that exhausted their attempts."""
    import redis.asyncio as aioredis

    from errorwatch.config import settings
    from errorwatch.queue.backends import RedisJobQueue
    from errorwatch.queue.jobs import UnknownQueueError

    async def _dead():
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        try:
            return await RedisJobQueue(queue, redis).dead_jobs(limit)
        finally:
            await redis.aclose()

    try:
        jobs = _run(_dead())
    except UnknownQueueError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    if not jobs:
        click.echo("No dead jobs.")
        return
    _print_table(
        [
            {
                "id": job.id,
                "attempts": job.attempts,
                "enqueued": job.enqueued_at.isoformat(timespec="seconds"),
                "error": job.last_error or "",
            }
            for job in jobs
        ],
        [("ID", "id", 34), ("TRIES", "attempts", 5), ("ENQUEUED", "enqueued", 25), ("ERROR", "error", 50)],
    )


@main.command()
@click.argument("organization_id")
@click.option("--cookie", "-c", envvar="ERRORWATCH_SESSION", help="Session token value")
@click.option("--cookie-name", default="better-auth.session_token", show_default=True)
def tail(organization_id: str, cookie: Optional[str], cookie_name: str):
    """Print live notifications for ORGANIZATION_ID until interrupted."""
    from errorwatch.realtime.client import NotificationDispatcher, SSEClient
    from errorwatch.realtime.types import NotificationEvent

    class _PrintingDispatcher(NotificationDispatcher):
        def dispatch(self, event: NotificationEvent) -> None:
            kind = event.type.value
            click.secho(f"{kind:<16}", fg=_TYPE_COLORS.get(kind, "white"), nl=False)
            click.echo(f" {event.project_id or '-'}  {json.dumps(event.payload, default=str)}")
            super().dispatch(event)

    client = SSEClient(
        _api_url(),
        organization_id,
        _PrintingDispatcher(invalidate=lambda key: None),
        cookies={cookie_name: cookie} if cookie else None,
    )

    async def _tail():
        try:
            await client.run()
        finally:
            await client.aclose()

    click.secho(f"Listening on {client.url} (Ctrl+C to stop)", dim=True)
    try:
        _run(_tail())
    except KeyboardInterrupt:
        click.echo()
    if client.rejected:
        click.secho(f"Error: subscription refused (HTTP {client.rejected})", fg="red", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
