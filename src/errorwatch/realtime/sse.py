"""SSE endpoint — real-time notification delivery to dashboard sessions.

Learn: Each dashboard tab opens GET /sse/{organization_id} with its session
cookie. The handler:
1. Resolves the session (401 without one) and checks the caller belongs
   to the organization (403 otherwise)
2. Subscribes to the organization's notification channel
3. Forwards every message as an ``update`` frame
4. Sends a ``ping`` frame when the channel is quiet, so proxies keep
   the connection open and a dead client is noticed

Reconnecting is the browser's job (EventSource retries on its own); a new
connection simply subscribes again and sees only new messages.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from errorwatch.auth.dependencies import get_organization_member
from errorwatch.auth.session_cache import Principal
from errorwatch.realtime.pubsub import NotificationBus

logger = structlog.get_logger()
router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


async def notification_stream(
    request: Request,
    bus: NotificationBus,
    organization_id: str,
    ping_interval: float,
):
    """Yield SSE frames for one subscriber until the client goes away."""
    async with bus.subscribe(organization_id) as subscription:
        logger.info("sse.subscribed", organization_id=organization_id)
        try:
            while not await request.is_disconnected():
                message = await subscription.get(timeout=ping_interval)
                if message is None:
                    yield sse_frame("ping", "")
                else:
                    yield sse_frame("update", message)
        finally:
            logger.info("sse.unsubscribed", organization_id=organization_id)


@router.get("/sse/{organization_id}")
async def organization_events(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(get_organization_member),
):
    """Stream notifications for one organization as text/event-stream."""
    logger.info(
        "sse.connect", organization_id=organization_id, principal_id=principal.id
    )
    settings = request.app.state.settings
    return StreamingResponse(
        notification_stream(
            request,
            request.app.state.bus,
            organization_id,
            settings.sse_ping_interval,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
