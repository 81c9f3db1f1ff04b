"""Job envelope and payload schemas for the three queues.

Learn: A job is a JSON document. The envelope (id, queue name, attempt
counter, enqueue time) is owned by the queue backend; the payload is one
of three pydantic models, picked by the queue name. The queue name never
changes after enqueue, so the payload type is known for the job's whole
life.

Payloads use camelCase aliases on the wire (that is what the SDKs send)
and snake_case attributes in Python.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

Level = Literal["fatal", "error", "warning", "info", "debug"]

# A failed job is always redelivered at least once
MIN_ATTEMPTS = 2


class QueueName(str, enum.Enum):
    EVENTS = "events"
    ALERTS = "alerts"
    REPLAYS = "replays"


class UnknownQueueError(Exception):
    pass


class JobPayloadError(Exception):
    """A payload does not match the schema of its queue."""


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Payloads ─────────────────────────────────────────────


class EventJob(_Payload):
    """One raw error occurrence submitted by an SDK."""

    project_id: str
    message: str
    file: str = "unknown"
    line: int = 0
    column: Optional[int] = None
    stack: str = ""
    env: str = "production"
    url: Optional[str] = None
    level: Level = "error"
    status_code: Optional[int] = None
    breadcrumbs: Any = None
    session_id: Optional[str] = None
    release: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AlertJob(_Payload):
    """A notification-worthy condition derived from event processing."""

    project_id: str
    fingerprint: str
    is_new_group: bool
    is_regression: bool = False
    level: str
    message: str


class ReplayError(_Payload):
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    stack: Optional[str] = None
    level: Level = "error"


class ReplayJob(_Payload):
    """A session-replay bundle attached to an error."""

    project_id: str
    session_id: str
    events: Optional[str] = None  # gzip+base64 or base64 JSON array
    error: ReplayError
    url: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: int  # epoch milliseconds
    release: Optional[str] = None


PAYLOAD_TYPES: dict[QueueName, type[_Payload]] = {
    QueueName.EVENTS: EventJob,
    QueueName.ALERTS: AlertJob,
    QueueName.REPLAYS: ReplayJob,
}


def queue_name(name: "str | QueueName") -> QueueName:
    try:
        return QueueName(name)
    except ValueError:
        raise UnknownQueueError(
            f"Unknown queue '{name}'. "
            f"Available queues: {', '.join(q.value for q in QueueName)}"
        ) from None


def parse_payload(name: "str | QueueName", data: dict) -> _Payload:
    """Validate raw payload data against its queue's schema."""
    model = PAYLOAD_TYPES[queue_name(name)]
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise JobPayloadError(str(e)) from e


# ─── Envelope ─────────────────────────────────────────────


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    queue_name: QueueName
    payload: dict
    attempts: int = 0  # failed attempts so far
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = None

    def typed_payload(self) -> _Payload:
        return parse_payload(self.queue_name, self.payload)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: "str | bytes") -> "Job":
        return cls.model_validate_json(raw)
