"""Health check endpoint.

Learn: Verifies the server is running and Redis is reachable, and reports
queue depths so a backlog shows up before dashboards go stale.
"""

from fastapi import APIRouter, Request

from errorwatch import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health, dependency connectivity and queue depths."""
    state = request.app.state
    checks = {"server": "ok", "version": __version__}

    redis = getattr(state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    try:
        checks["queues"] = await state.queues.stats()
    except Exception as e:
        checks["queues"] = f"error: {e}"

    checks["session_cache"] = state.gateway.cache.stats()

    healthy = checks["redis"] in ("ok", "disabled") and isinstance(checks["queues"], list)
    return {"status": "healthy" if healthy else "degraded", **checks}
