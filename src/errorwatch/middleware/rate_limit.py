"""Ingest rate limiting — Redis fixed-window counter per API key.

Learn: SDKs can flood the ingest endpoints (an error inside a render loop
fires thousands of events a second). Each API key gets a counter key like
"errorwatch:rl:{key_hash}:{minute}"; requests over the per-minute budget
get 429 before anything is enqueued.

Only ingest paths are limited. Gracefully skips limiting if Redis is
unavailable (e.g. in tests or with the in-memory queue backend).
"""

import hashlib
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

INGEST_PATHS = (
    "/api/v1/events",
    "/api/v1/replays",
    "/api/v1/transactions",
    "/api/v1/logs",
)


class IngestRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-API-key request budget on the ingest endpoints."""

    def __init__(self, app, rpm: int = 600):
        super().__init__(app)
        self.rpm = rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method != "POST" or request.url.path not in INGEST_PATHS:
            return await call_next(request)

        redis = getattr(request.app.state, "redis", None)
        if redis is None:
            return await call_next(request)

        api_key = request.headers.get("x-api-key") or (
            request.client.host if request.client else "unknown"
        )
        key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:16]
        window = int(time.time() // 60)
        key = f"errorwatch:rl:{key_hash}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)
        except Exception:
            # Counter unavailable: let the request through
            return await call_next(request)

        if count > self.rpm:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.rpm - count))
        return response
