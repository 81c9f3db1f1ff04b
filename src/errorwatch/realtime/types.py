"""Notification kinds relayed to dashboard sessions.

Learn: The set of kinds is closed. Producers build a NotificationEvent
with a NotificationType member, and the dashboard client dispatches on the
same enum through an explicit table, so a typo is a validation error
rather than a silently unhandled string.
"""

import enum
import time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NotificationType(str, enum.Enum):
    ISSUE_NEW = "issue:new"
    ISSUE_UPDATED = "issue:updated"
    ISSUE_REGRESSED = "issue:regressed"
    ALERT_TRIGGERED = "alert:triggered"
    TRANSACTION_NEW = "transaction:new"
    REPLAY_NEW = "replay:new"
    LOG_NEW = "log:new"


def _now_ms() -> int:
    return int(time.time() * 1000)


class NotificationEvent(BaseModel):
    """A state change in transit from a worker to subscribed sessions."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: NotificationType
    organization_id: Optional[str] = None
    project_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=_now_ms)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
