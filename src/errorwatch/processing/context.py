"""Everything a job handler touches, bundled once per process."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import redis.asyncio as aioredis

from errorwatch.config import Settings
from errorwatch.processing.store import IssueStore, MemoryIssueStore, RedisIssueStore
from errorwatch.queue.registry import QueueSet
from errorwatch.realtime.pubsub import LocalNotificationBus, NotificationBus, RedisNotificationBus

if TYPE_CHECKING:
    from errorwatch.processing.alerts import AlertNotifier


@dataclass
class ProcessingContext:
    store: IssueStore
    bus: NotificationBus
    queues: QueueSet
    notifier: "AlertNotifier"

    @classmethod
    def from_settings(
        cls, settings: Settings, redis: Optional[aioredis.Redis] = None
    ) -> "ProcessingContext":
        """Redis-backed when a connection is given, in-process otherwise."""
        from errorwatch.processing.alerts import AlertNotifier

        if redis is not None and settings.queue_backend == "redis":
            store: IssueStore = RedisIssueStore(redis)
            bus: NotificationBus = RedisNotificationBus(redis)
        else:
            store = MemoryIssueStore()
            bus = LocalNotificationBus()
        return cls(
            store=store,
            bus=bus,
            queues=QueueSet.from_settings(settings, redis),
            notifier=AlertNotifier(
                resend_api_key=settings.resend_api_key,
                email_from=settings.email_from,
                dashboard_url=settings.dashboard_url,
            ),
        )

    async def publish(self, project_id: str, event) -> int:
        """Publish to the project's organization; 0 if the project is unknown."""
        organization_id = await self.store.organization_for_project(project_id)
        if organization_id is None:
            return 0
        return await self.bus.publish(organization_id, event)

    async def aclose(self) -> None:
        await self.notifier.aclose()
