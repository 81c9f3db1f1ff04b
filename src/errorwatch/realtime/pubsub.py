"""Notification bus — broadcast between workers and SSE connections.

Learn: Redis pub/sub is fire-and-forget. If no dashboard is listening, the
message is lost. That's fine for live updates: the dashboard can always
query the API to catch up, and nothing here is buffered for reconnects.

Channel naming: errorwatch:sse:org:{organization_id}
Each SSE connection subscribes only to its own organization's channel.

Publishing never raises into the caller. A worker that already committed
its state change must not fail (and be retried) because the live-update
side channel is down.
"""

import abc
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
import structlog

from errorwatch.realtime.types import NotificationEvent

logger = structlog.get_logger()

CHANNEL_PREFIX = "errorwatch:sse:org:"


def channel_for(organization_id: str) -> str:
    return f"{CHANNEL_PREFIX}{organization_id}"


class Subscription(abc.ABC):
    """One subscriber's view of an organization channel."""

    @abc.abstractmethod
    async def get(self, timeout: float) -> Optional[str]:
        """Next raw message, or None if nothing arrived within ``timeout``."""


class NotificationBus(abc.ABC):
    @abc.abstractmethod
    async def _send(self, channel: str, message: str) -> int:
        """Deliver to subscribers; returns how many received it."""

    @abc.abstractmethod
    def subscribe(self, organization_id: str):
        """Async context manager yielding a Subscription."""

    async def publish(self, organization_id: str, event: NotificationEvent) -> int:
        """Publish an event to an organization's subscribers (fire-and-forget)."""
        if event.organization_id is None:
            event = event.model_copy(update={"organization_id": organization_id})
        try:
            receivers = await self._send(channel_for(organization_id), event.to_wire())
        except Exception as e:
            logger.warning(
                "notification.publish_failed",
                organization_id=organization_id,
                type=event.type.value,
                error=str(e),
            )
            return 0
        logger.debug(
            "notification.published",
            organization_id=organization_id,
            type=event.type.value,
            receivers=receivers,
        )
        return receivers


# ─── Redis backend ────────────────────────────────────────


class _RedisSubscription(Subscription):
    def __init__(self, pubsub):
        self._pubsub = pubsub

    async def get(self, timeout: float) -> Optional[str]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=remaining
            )
            if message and message.get("type") == "message":
                data = message["data"]
                return data.decode() if isinstance(data, bytes) else data


class RedisNotificationBus(NotificationBus):
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def _send(self, channel: str, message: str) -> int:
        return await self.redis.publish(channel, message)

    @asynccontextmanager
    async def subscribe(self, organization_id: str) -> AsyncIterator[Subscription]:
        pubsub = self.redis.pubsub()
        channel = channel_for(organization_id)
        await pubsub.subscribe(channel)
        try:
            yield _RedisSubscription(pubsub)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


# ─── In-process backend ───────────────────────────────────


class _LocalSubscription(Subscription):
    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)

    async def get(self, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class LocalNotificationBus(NotificationBus):
    """In-process fan-out for single-process deployments and tests.

    A subscriber that falls ``maxsize`` messages behind starts losing
    messages instead of growing without bound.
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._subscribers: dict[str, set[_LocalSubscription]] = {}

    async def _send(self, channel: str, message: str) -> int:
        delivered = 0
        for sub in list(self._subscribers.get(channel, ())):
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("notification.subscriber_lagging", channel=channel)
        return delivered

    def subscriber_count(self, organization_id: str) -> int:
        return len(self._subscribers.get(channel_for(organization_id), ()))

    @asynccontextmanager
    async def subscribe(self, organization_id: str) -> AsyncIterator[Subscription]:
        channel = channel_for(organization_id)
        sub = _LocalSubscription(self.maxsize)
        self._subscribers.setdefault(channel, set()).add(sub)
        try:
            yield sub
        finally:
            subs = self._subscribers.get(channel)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[channel]
