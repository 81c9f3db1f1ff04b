"""Tests for the notification bus, the SSE stream and the dashboard client.

Learn: The SSE generator is driven directly with a stand-in request
object; pushing a never-ending stream through ASGITransport would
buffer until the generator finishes.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from errorwatch.realtime.client import (
    ALERTS,
    GROUPS,
    PERFORMANCE,
    STATS,
    NotificationDispatcher,
    SSEClient,
    SSEStatus,
    iter_sse,
)
from errorwatch.realtime.pubsub import (
    LocalNotificationBus,
    RedisNotificationBus,
    channel_for,
)
from errorwatch.realtime.sse import notification_stream, sse_frame
from errorwatch.realtime.types import NotificationEvent, NotificationType


class FakeRequest:
    """Reports a disconnect after ``polls`` checks."""

    def __init__(self, polls: int):
        self.polls = polls

    async def is_disconnected(self) -> bool:
        self.polls -= 1
        return self.polls < 0


async def lines(*items):
    for item in items:
        yield item


class Recorder:
    def __init__(self):
        self.invalidated: list[str] = []
        self.toasts: list[tuple[str, str]] = []
        self.logs: list[NotificationEvent] = []
        self.focused = False

    def dispatcher(self) -> NotificationDispatcher:
        return NotificationDispatcher(
            invalidate=self.invalidated.append,
            toast=lambda title, body: self.toasts.append((title, body)),
            live_log=self.logs.append,
            logs_focused=lambda: self.focused,
        )


def wire(type_: str, **payload) -> str:
    return json.dumps({"type": type_, "organizationId": "org-1", "payload": payload})


# ─── Bus ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_local_bus_delivers_only_to_the_organization():
    bus = LocalNotificationBus()
    event = NotificationEvent(type=NotificationType.ISSUE_NEW, project_id="p1")

    async with bus.subscribe("org-1") as mine, bus.subscribe("org-2") as theirs:
        assert await bus.publish("org-1", event) == 1
        raw = await mine.get(timeout=1)
        assert await theirs.get(timeout=0.01) is None

    decoded = json.loads(raw)
    assert decoded["type"] == "issue:new"
    assert decoded["organizationId"] == "org-1"
    assert bus.subscriber_count("org-1") == 0


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_dropped():
    bus = LocalNotificationBus()
    event = NotificationEvent(type=NotificationType.ISSUE_NEW)
    assert await bus.publish("org-1", event) == 0


@pytest.mark.asyncio
async def test_lagging_subscriber_loses_messages_instead_of_blocking():
    bus = LocalNotificationBus(maxsize=2)
    event = NotificationEvent(type=NotificationType.LOG_NEW)
    async with bus.subscribe("org-1"):
        results = [await bus.publish("org-1", event) for _ in range(3)]
    assert results == [1, 1, 0]


@pytest.mark.asyncio
async def test_redis_publish_failure_is_not_raised():
    redis = AsyncMock()
    redis.publish.side_effect = ConnectionError("redis down")
    bus = RedisNotificationBus(redis)

    assert await bus.publish("org-1", NotificationEvent(type=NotificationType.ISSUE_NEW)) == 0


@pytest.mark.asyncio
async def test_redis_publish_uses_organization_channel():
    redis = AsyncMock()
    redis.publish.return_value = 2
    bus = RedisNotificationBus(redis)

    assert await bus.publish("org-1", NotificationEvent(type=NotificationType.ISSUE_NEW)) == 2
    channel, message = redis.publish.await_args.args
    assert channel == channel_for("org-1") == "errorwatch:sse:org:org-1"
    assert json.loads(message)["organizationId"] == "org-1"


def test_unknown_notification_type_is_rejected():
    with pytest.raises(ValueError):
        NotificationEvent(type="issue:deleted")


# ─── SSE stream ───────────────────────────────────────────


def test_sse_frame_format():
    assert sse_frame("ping", "") == "event: ping\ndata: \n\n"


@pytest.mark.asyncio
async def test_stream_pings_when_quiet():
    bus = LocalNotificationBus()
    frames = [f async for f in notification_stream(FakeRequest(2), bus, "org-1", 0.01)]
    assert frames == [sse_frame("ping", ""), sse_frame("ping", "")]
    assert bus.subscriber_count("org-1") == 0


@pytest.mark.asyncio
async def test_stream_forwards_updates():
    bus = LocalNotificationBus()
    stream = notification_stream(FakeRequest(5), bus, "org-1", 0.5)

    event = NotificationEvent(type=NotificationType.ISSUE_NEW, project_id="p1")
    frame, delivered = await asyncio.gather(
        stream.__anext__(), publish_once_subscribed(bus, event)
    )
    await stream.aclose()

    assert delivered == 1
    assert frame.startswith("event: update\ndata: ")
    assert json.loads(frame.split("data: ", 1)[1])["type"] == "issue:new"


async def publish_once_subscribed(bus, event):
    while bus.subscriber_count("org-1") == 0:
        await asyncio.sleep(0.001)
    return await bus.publish("org-1", event)


# ─── Dashboard client ─────────────────────────────────────


@pytest.mark.asyncio
async def test_iter_sse_parses_frames():
    frames = [
        f
        async for f in iter_sse(
            lines(
                ": comment",
                "event: update",
                "data: {\"a\": 1}",
                "",
                "event: ping",
                "data: ",
                "",
                "data: tail",
            )
        )
    ]
    assert frames == [("update", '{"a": 1}'), ("ping", ""), ("message", "tail")]


@pytest.mark.parametrize(
    "type_,expected",
    [
        ("issue:new", [GROUPS, STATS]),
        ("issue:regressed", [GROUPS, STATS]),
        ("alert:triggered", [ALERTS]),
        ("transaction:new", [PERFORMANCE]),
        ("log:new", []),
    ],
)
def test_dispatch_invalidates_queries(type_, expected):
    recorder = Recorder()
    recorder.dispatcher().handle_raw(wire(type_))
    assert recorder.invalidated == expected


def test_alert_shows_toast():
    recorder = Recorder()
    recorder.dispatcher().handle_raw(wire("alert:triggered", message="boom"))
    assert recorder.toasts == [("Alert: boom", "A new alert was triggered")]


def test_alert_toast_suppressed_while_logs_focused():
    recorder = Recorder()
    recorder.focused = True
    recorder.dispatcher().handle_raw(wire("alert:triggered", message="boom"))
    assert recorder.toasts == []
    assert recorder.invalidated == [ALERTS]


def test_log_lines_go_to_live_log():
    recorder = Recorder()
    recorder.dispatcher().handle_raw(wire("log:new", line="hello"))
    assert [e.payload["line"] for e in recorder.logs] == ["hello"]


@pytest.mark.parametrize("data", ["not json", "{}", '{"type": "unknown:kind"}', "[]"])
def test_malformed_messages_are_ignored(data):
    recorder = Recorder()
    assert recorder.dispatcher().handle_raw(data) is None
    assert recorder.invalidated == [] and recorder.toasts == []


def sse_client_for(handler) -> SSEClient:
    return SSEClient(
        "http://test",
        "org-1",
        Recorder().dispatcher(),
        reconnect_delay=0.01,
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_client_stops_when_refused(status_code):
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(status_code)

    client = sse_client_for(handler)
    await asyncio.wait_for(client.run(), timeout=1)

    assert paths == ["/sse/org-1"]
    assert client.rejected == status_code
    assert client.status is SSEStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_client_reconnects_after_server_error():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if len(paths) == 3:
            client.stop()
        return httpx.Response(503)

    client = sse_client_for(handler)
    await asyncio.wait_for(client.run(), timeout=1)

    assert len(paths) == 3
    assert client.rejected is None
