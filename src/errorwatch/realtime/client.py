"""Dashboard-side consumer of the SSE notification stream.

Learn: The dashboard reacts to a notification in one of three ways:
invalidate cached queries so views refetch, show a transient toast, or
hand a live log line to whatever is tailing logs. Which reaction belongs
to which NotificationType is an explicit table, and a type missing from
the table is simply not reacted to.

SSEClient owns the connection: it reports connected / connecting /
disconnected and reconnects after a delay when the transport drops. A
401 or 403 from the server ends the subscription instead, with the
status kept in ``rejected``.
Malformed messages are logged at debug level and skipped; they never
close the connection.
"""

import asyncio
import enum
import json
from typing import AsyncIterator, Callable, Optional

import httpx
import structlog
from pydantic import ValidationError

from errorwatch.realtime.types import NotificationEvent, NotificationType

logger = structlog.get_logger()

# Not retried
REJECTED_STATUSES = frozenset({401, 403})

# Query cache keys the dashboard views are built on
GROUPS = "groups"
STATS = "stats"
ALERTS = "alerts"
PERFORMANCE = "performance"
REPLAY = "replay"

INVALIDATIONS: dict[NotificationType, tuple[str, ...]] = {
    NotificationType.ISSUE_NEW: (GROUPS, STATS),
    NotificationType.ISSUE_UPDATED: (GROUPS, STATS),
    NotificationType.ISSUE_REGRESSED: (GROUPS, STATS),
    NotificationType.ALERT_TRIGGERED: (ALERTS,),
    NotificationType.TRANSACTION_NEW: (PERFORMANCE,),
    NotificationType.REPLAY_NEW: (REPLAY,),
}


class SSEStatus(str, enum.Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"


class NotificationDispatcher:
    """Routes decoded notifications to cache, toast and live-log sinks."""

    def __init__(
        self,
        invalidate: Callable[[str], None],
        toast: Optional[Callable[[str, str], None]] = None,
        live_log: Optional[Callable[[NotificationEvent], None]] = None,
        logs_focused: Callable[[], bool] = lambda: False,
    ):
        self.invalidate = invalidate
        self.toast = toast
        self.live_log = live_log
        self.logs_focused = logs_focused

    def handle_raw(self, data: str) -> Optional[NotificationEvent]:
        """Decode and dispatch one ``update`` frame; None if malformed."""
        try:
            event = NotificationEvent.model_validate(json.loads(data))
        except (ValueError, ValidationError):
            logger.debug("sse.malformed_message", data=data[:200])
            return None
        self.dispatch(event)
        return event

    def dispatch(self, event: NotificationEvent) -> None:
        for key in INVALIDATIONS.get(event.type, ()):
            self.invalidate(key)

        if event.type is NotificationType.ALERT_TRIGGERED:
            if self.toast is not None and not self.logs_focused():
                message = event.payload.get("message", "")
                self.toast(f"Alert: {message}", "A new alert was triggered")
        elif event.type is NotificationType.LOG_NEW:
            if self.live_log is not None:
                self.live_log(event)


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Parse text/event-stream lines into (event, data) pairs."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].lstrip(" "))
    if data:
        yield event, "\n".join(data)


class SSEClient:
    """Long-lived subscription to /sse/{organization_id}."""

    def __init__(
        self,
        base_url: str,
        organization_id: str,
        dispatcher: NotificationDispatcher,
        *,
        cookies: Optional[dict[str, str]] = None,
        reconnect_delay: float = 3.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.url = f"{base_url.rstrip('/')}/sse/{organization_id}"
        self.dispatcher = dispatcher
        self.reconnect_delay = reconnect_delay
        self._http = http or httpx.AsyncClient(cookies=cookies, timeout=None)
        self._status = SSEStatus.DISCONNECTED
        self._stopped = asyncio.Event()
        self.rejected: Optional[int] = None

    @property
    def status(self) -> SSEStatus:
        return self._status

    def stop(self) -> None:
        self._stopped.set()

    async def run(self) -> None:
        """Consume the stream until stop() is called or the server refuses us."""
        try:
            while not self._stopped.is_set():
                self._status = SSEStatus.CONNECTING
                try:
                    await self._consume()
                except httpx.HTTPStatusError as e:
                    status_code = e.response.status_code
                    if status_code in REJECTED_STATUSES:
                        self.rejected = status_code
                        logger.warning("sse.rejected", url=self.url, status_code=status_code)
                        break
                    logger.warning("sse.connection_error", url=self.url, error=str(e))
                except httpx.HTTPError as e:
                    logger.warning("sse.connection_error", url=self.url, error=str(e))
                if self._stopped.is_set():
                    break
                self._status = SSEStatus.CONNECTING
                try:
                    await asyncio.wait_for(self._stopped.wait(), self.reconnect_delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._status = SSEStatus.DISCONNECTED

    async def _consume(self) -> None:
        headers = {"Accept": "text/event-stream"}
        async with self._http.stream("GET", self.url, headers=headers) as response:
            response.raise_for_status()
            self._status = SSEStatus.CONNECTED
            async for event, data in iter_sse(response.aiter_lines()):
                if self._stopped.is_set():
                    return
                if event == "update":
                    self.dispatcher.handle_raw(data)

    async def aclose(self) -> None:
        self.stop()
        await self._http.aclose()
