"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis, upstream clients,
optional in-process workers). Middleware, CORS and routers are all
registered here.

Shared components live on ``app.state``:

    settings  queues  store  bus  gateway  redis  processing

init_state() builds them. Tests call it directly with in-memory backends
and a mocked identity client, since ASGITransport does not run lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from errorwatch import __version__
from errorwatch.api import api_router
from errorwatch.auth.gateway import AuthGateway
from errorwatch.auth.identity import IdentityClient
from errorwatch.auth.session_cache import SessionCache
from errorwatch.config import Settings, settings
from errorwatch.processing.context import ProcessingContext

logger = structlog.get_logger()


def init_state(
    app: FastAPI,
    config: Settings,
    redis: Optional[aioredis.Redis] = None,
    identity: Optional[IdentityClient] = None,
    processing: Optional[ProcessingContext] = None,
) -> None:
    """Build the shared components and attach them to app.state."""
    processing = processing or ProcessingContext.from_settings(config, redis)
    identity = identity or IdentityClient(
        config.identity_url, config.api_url, timeout=config.upstream_timeout_seconds
    )
    cache = SessionCache(
        ttl_seconds=config.session_cache_ttl_seconds,
        max_size=config.session_cache_max_size,
    )

    app.state.settings = config
    app.state.redis = redis
    app.state.processing = processing
    app.state.queues = processing.queues
    app.state.store = processing.store
    app.state.bus = processing.bus
    app.state.identity = identity
    app.state.gateway = AuthGateway(
        cache,
        identity,
        fail_open=config.auth_fail_open,
        cookie_names=config.session_cookie_names,
        lookup_timeout=config.upstream_timeout_seconds,
    )


async def _connect_redis(config: Settings) -> Optional[aioredis.Redis]:
    redis = aioredis.from_url(config.redis_url, decode_responses=True)
    try:
        await redis.ping()
    except Exception as e:
        await redis.aclose()
        if config.queue_backend == "redis":
            raise
        # Memory backend: Redis only adds rate limiting
        logger.warning("errorwatch.redis_unavailable", error=str(e))
        return None
    logger.info("errorwatch.redis_connected", url=config.redis_url)
    return redis


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: anything before `yield` runs at startup, after `yield` at shutdown.
    """
    config: Settings = app.state.settings
    logger.info(
        "errorwatch.starting",
        version=__version__,
        environment=config.environment,
        port=config.port,
        queue_backend=config.queue_backend,
    )

    redis = await _connect_redis(config)
    init_state(app, config, redis)
    if config.auth_fail_open:
        logger.warning("errorwatch.auth_fail_open", environment=config.environment)

    worker_task = None
    pools = []
    if config.run_workers_in_process:
        from errorwatch.queue.runner import build_pools, run_pools

        pools = build_pools(app.state.processing, config)
        worker_task = asyncio.create_task(run_pools(pools))
        logger.info("errorwatch.workers_started", queues=[p.name for p in pools])

    yield

    logger.info("errorwatch.shutdown")
    if worker_task is not None:
        for pool in pools:
            pool.stop()
        await worker_task

    await app.state.identity.aclose()
    await app.state.processing.aclose()
    if redis is not None:
        await redis.aclose()


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    config = config or settings
    app = FastAPI(
        title="ErrorWatch",
        description="Error ingestion, queueing and real-time notification pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → AuthGateway → IngestRateLimit → handler

    from errorwatch.middleware.auth_gateway import AuthGatewayMiddleware
    from errorwatch.middleware.rate_limit import IngestRateLimitMiddleware

    app.add_middleware(IngestRateLimitMiddleware, rpm=config.ingest_rate_limit_rpm)
    app.add_middleware(AuthGatewayMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from errorwatch.realtime.sse import router as sse_router
    app.include_router(sse_router)

    return app


# Default app instance (used by uvicorn: errorwatch.main:app)
app = create_app()
