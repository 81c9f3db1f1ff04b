"""Issue store — the state workers read and update.

Learn: Workers need a handful of facts (which organization owns a
project, which alert rules are enabled) and a handful of writes (group an
occurrence, remember a replay). This module exposes exactly those as an
interface, with a Redis implementation for deployments and an in-memory
one for single-process development and tests.

Updates are shaped to tolerate at-least-once, unordered delivery:
- occurrences are recorded under the job id with SET NX, so a redelivered
  job is recognized;
- grouping an occurrence writes the group and the occurrence's outcome in
  one transaction (WATCH/MULTI), so a redelivery reads the outcome back
  instead of counting again;
- first_seen keeps the minimum, so the order in which occurrences arrive
  does not matter;
- one-shot side effects (alert deliveries, threshold cooldowns) are
  guarded by ``claim_once``.

Redis layout:

    errorwatch:apikeys                       HASH  sha256(key) → project id
    errorwatch:project:{id}                  HASH  organization_id, name
    errorwatch:project:{id}:rules            STR   JSON fingerprint rules
    errorwatch:project:{id}:alert_rules      STR   JSON alert rules
    errorwatch:project:{id}:groups           ZSET  fingerprint → last seen
    errorwatch:project:{id}:events           ZSET  event id → created at (30 days)
    errorwatch:group:{fingerprint}           HASH  group fields + count
    errorwatch:group:{fingerprint}:users     SET   affected user ids
    errorwatch:event:{id}                    STR   occurrence JSON
    errorwatch:event:{id}:grouped            HASH  count, was_resolved at grouping
    errorwatch:replay:{session id}           HASH  replay session
    errorwatch:replay:{session id}:events    HASH  chunk id → events JSON
    errorwatch:once:{key}                    STR   claim marker
"""

import abc
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from redis.exceptions import WatchError

EVENT_TTL_SECONDS = 30 * 86400


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


# ─── Models ───────────────────────────────────────────────


class AlertRule(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str = ""
    type: Literal["new_error", "regression", "threshold"] = "new_error"
    channel: Literal["email", "webhook", "slack"] = "email"
    config: dict[str, Any] = Field(default_factory=dict)
    threshold: Optional[int] = None
    window_minutes: Optional[int] = None
    enabled: bool = True


@dataclass
class GroupUpdate:
    project_id: str
    fingerprint: str
    message: str
    file: str
    line: int
    level: str
    seen_at: datetime
    url: Optional[str] = None
    status_code: Optional[int] = None


@dataclass(frozen=True)
class GroupUpsert:
    count: int
    was_resolved: bool

    @property
    def is_new(self) -> bool:
        return self.count == 1


@dataclass
class ReplayRecord:
    session_id: str
    project_id: str
    started_at: float
    device_type: str = "desktop"
    browser: str = "Unknown"
    os: str = "Unknown"
    url: Optional[str] = None
    user_agent: Optional[str] = None
    release: Optional[str] = None
    fingerprint: Optional[str] = None
    error_event_id: Optional[str] = None
    chunk_id: str = ""
    events: list = field(default_factory=list)


def _group_fields(update: GroupUpdate, first_seen: float, now: float) -> dict:
    fields = {
        "project_id": update.project_id,
        "message": update.message,
        "file": update.file,
        "line": update.line,
        "level": update.level,
        "url": update.url,
        "status_code": update.status_code,
        "first_seen": first_seen,
        "last_seen": now,
        "status": "open",
    }
    return {k: v for k, v in fields.items() if v is not None}


class IssueStore(abc.ABC):
    """What the workers and ingest endpoints need from persistence."""

    @abc.abstractmethod
    async def project_for_api_key(self, api_key: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def organization_for_project(self, project_id: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def project_name(self, project_id: str) -> str: ...

    @abc.abstractmethod
    async def fingerprint_rules(self, project_id: str) -> list[dict]: ...

    @abc.abstractmethod
    async def alert_rules(self, project_id: str) -> list[AlertRule]: ...

    @abc.abstractmethod
    async def record_event(
        self, event_id: str, project_id: str, fingerprint: str, data: dict, created_at: datetime
    ) -> bool:
        """Store an occurrence; False if this event id was already recorded."""

    @abc.abstractmethod
    async def upsert_group(self, update: GroupUpdate, event_id: str) -> GroupUpsert:
        """Count ``event_id`` into its group once.

        The outcome is stored with the group update; calling again for the
        same event id returns that outcome and changes nothing.
        """

    @abc.abstractmethod
    async def get_group(self, fingerprint: str) -> Optional[dict]: ...

    @abc.abstractmethod
    async def add_affected_user(self, fingerprint: str, user_id: str) -> int: ...

    @abc.abstractmethod
    async def count_events_since(self, project_id: str, since: float) -> int: ...

    @abc.abstractmethod
    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        """True for the first caller per key within ``ttl_seconds``."""

    @abc.abstractmethod
    async def release_claim(self, key: str) -> None: ...

    @abc.abstractmethod
    async def get_replay(self, session_id: str) -> Optional[dict]: ...

    @abc.abstractmethod
    async def save_replay(self, record: ReplayRecord) -> int:
        """Create or extend a replay session; returns its total event count."""

    # Registration helpers (seeding, admin tooling, tests)

    @abc.abstractmethod
    async def register_project(
        self,
        project_id: str,
        organization_id: str,
        name: str = "",
        api_keys: tuple[str, ...] = (),
    ) -> None: ...

    @abc.abstractmethod
    async def set_alert_rules(self, project_id: str, rules: list[AlertRule]) -> None: ...

    @abc.abstractmethod
    async def set_fingerprint_rules(self, project_id: str, rules: list[dict]) -> None: ...


# ─── Redis ────────────────────────────────────────────────


class RedisIssueStore(IssueStore):
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def project_for_api_key(self, api_key: str) -> Optional[str]:
        return await self.redis.hget("errorwatch:apikeys", hash_api_key(api_key))

    async def organization_for_project(self, project_id: str) -> Optional[str]:
        return await self.redis.hget(f"errorwatch:project:{project_id}", "organization_id")

    async def project_name(self, project_id: str) -> str:
        name = await self.redis.hget(f"errorwatch:project:{project_id}", "name")
        return name or "Unknown Project"

    async def fingerprint_rules(self, project_id: str) -> list[dict]:
        raw = await self.redis.get(f"errorwatch:project:{project_id}:rules")
        return json.loads(raw) if raw else []

    async def alert_rules(self, project_id: str) -> list[AlertRule]:
        raw = await self.redis.get(f"errorwatch:project:{project_id}:alert_rules")
        if not raw:
            return []
        return [AlertRule.model_validate(r) for r in json.loads(raw)]

    async def record_event(
        self, event_id: str, project_id: str, fingerprint: str, data: dict, created_at: datetime
    ) -> bool:
        document = json.dumps({**data, "fingerprint": fingerprint}, default=str)
        created = await self.redis.set(
            f"errorwatch:event:{event_id}", document, nx=True, ex=EVENT_TTL_SECONDS
        )
        if not created:
            return False
        events_key = f"errorwatch:project:{project_id}:events"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(events_key, {event_id: created_at.timestamp()})
            pipe.zremrangebyscore(events_key, "-inf", f"({time.time() - EVENT_TTL_SECONDS}")
            await pipe.execute()
        return True

    async def upsert_group(self, update: GroupUpdate, event_id: str) -> GroupUpsert:
        key = f"errorwatch:group:{update.fingerprint}"
        marker = f"errorwatch:event:{event_id}:grouped"
        seen = update.seen_at.timestamp()

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key, marker)
                    previous = await pipe.hgetall(marker)
                    if previous:
                        return GroupUpsert(
                            count=int(previous["count"]),
                            was_resolved=previous["was_resolved"] == "1",
                        )
                    status, first_seen, count = await pipe.hmget(
                        key, "status", "first_seen", "count"
                    )
                    earliest = min(float(first_seen), seen) if first_seen else seen
                    now = time.time()
                    result = GroupUpsert(
                        count=int(count or 0) + 1, was_resolved=status == "resolved"
                    )

                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={**_group_fields(update, earliest, now), "count": result.count},
                    )
                    pipe.hdel(key, "resolved_at", "resolved_by")
                    pipe.zadd(
                        f"errorwatch:project:{update.project_id}:groups",
                        {update.fingerprint: now},
                    )
                    pipe.hset(
                        marker,
                        mapping={"count": result.count, "was_resolved": int(result.was_resolved)},
                    )
                    pipe.expire(marker, EVENT_TTL_SECONDS)
                    await pipe.execute()
                    return result
                except WatchError:
                    continue

    async def get_group(self, fingerprint: str) -> Optional[dict]:
        group = await self.redis.hgetall(f"errorwatch:group:{fingerprint}")
        return group or None

    async def add_affected_user(self, fingerprint: str, user_id: str) -> int:
        users_key = f"errorwatch:group:{fingerprint}:users"
        await self.redis.sadd(users_key, user_id)
        affected = await self.redis.scard(users_key)
        await self.redis.hset(f"errorwatch:group:{fingerprint}", "users_affected", affected)
        return affected

    async def count_events_since(self, project_id: str, since: float) -> int:
        return await self.redis.zcount(
            f"errorwatch:project:{project_id}:events", since, "+inf"
        )

    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.redis.set(f"errorwatch:once:{key}", "1", nx=True, ex=ttl_seconds))

    async def release_claim(self, key: str) -> None:
        await self.redis.delete(f"errorwatch:once:{key}")

    async def get_replay(self, session_id: str) -> Optional[dict]:
        replay = await self.redis.hgetall(f"errorwatch:replay:{session_id}")
        return replay or None

    async def save_replay(self, record: ReplayRecord) -> int:
        key = f"errorwatch:replay:{record.session_id}"
        fields = {
            "project_id": record.project_id,
            "device_type": record.device_type,
            "browser": record.browser,
            "os": record.os,
            "url": record.url,
            "user_agent": record.user_agent,
            "release": record.release,
            "fingerprint": record.fingerprint,
            "error_event_id": record.error_event_id,
        }
        added = 0
        if record.events:
            stored = await self.redis.hsetnx(
                f"{key}:events", record.chunk_id, json.dumps(record.events)
            )
            added = len(record.events) if stored else 0

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, "started_at", record.started_at)
            pipe.hset(key, mapping={k: v for k, v in fields.items() if v is not None})
            pipe.hset(key, "last_activity", time.time())
            pipe.hincrby(key, "event_count", added)
            if record.fingerprint:
                pipe.sadd(f"errorwatch:group:{record.fingerprint}:replays", record.session_id)
            results = await pipe.execute()
        return int(results[3])

    async def register_project(
        self,
        project_id: str,
        organization_id: str,
        name: str = "",
        api_keys: tuple[str, ...] = (),
    ) -> None:
        await self.redis.hset(
            f"errorwatch:project:{project_id}",
            mapping={"organization_id": organization_id, "name": name},
        )
        for api_key in api_keys:
            await self.redis.hset("errorwatch:apikeys", hash_api_key(api_key), project_id)

    async def set_alert_rules(self, project_id: str, rules: list[AlertRule]) -> None:
        await self.redis.set(
            f"errorwatch:project:{project_id}:alert_rules",
            json.dumps([r.model_dump(by_alias=True) for r in rules]),
        )

    async def set_fingerprint_rules(self, project_id: str, rules: list[dict]) -> None:
        await self.redis.set(f"errorwatch:project:{project_id}:rules", json.dumps(rules))


# ─── In-process ───────────────────────────────────────────


class MemoryIssueStore(IssueStore):
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.api_keys: dict[str, str] = {}
        self.projects: dict[str, dict] = {}
        self.rules: dict[str, list[dict]] = {}
        self.alerts: dict[str, list[AlertRule]] = {}
        self.events: dict[str, dict] = {}
        self.grouped: dict[str, GroupUpsert] = {}
        self.groups: dict[str, dict] = {}
        self.users: dict[str, set[str]] = {}
        self.replays: dict[str, dict] = {}
        self.claims: dict[str, float] = {}

    async def project_for_api_key(self, api_key: str) -> Optional[str]:
        return self.api_keys.get(hash_api_key(api_key))

    async def organization_for_project(self, project_id: str) -> Optional[str]:
        return self.projects.get(project_id, {}).get("organization_id")

    async def project_name(self, project_id: str) -> str:
        return self.projects.get(project_id, {}).get("name") or "Unknown Project"

    async def fingerprint_rules(self, project_id: str) -> list[dict]:
        return list(self.rules.get(project_id, []))

    async def alert_rules(self, project_id: str) -> list[AlertRule]:
        return list(self.alerts.get(project_id, []))

    async def record_event(
        self, event_id: str, project_id: str, fingerprint: str, data: dict, created_at: datetime
    ) -> bool:
        self._expire_events()
        if event_id in self.events:
            return False
        self.events[event_id] = {
            **data,
            "project_id": project_id,
            "fingerprint": fingerprint,
            "created_at": created_at.timestamp(),
            "recorded_at": self._clock(),
        }
        return True

    def _expire_events(self) -> None:
        # Insertion order is recording order, so expired entries are a prefix
        cutoff = self._clock() - EVENT_TTL_SECONDS
        while self.events:
            event_id, event = next(iter(self.events.items()))
            if event["recorded_at"] >= cutoff:
                break
            del self.events[event_id]
            self.grouped.pop(event_id, None)

    async def upsert_group(self, update: GroupUpdate, event_id: str) -> GroupUpsert:
        if event_id in self.grouped:
            return self.grouped[event_id]
        group = self.groups.get(update.fingerprint)
        seen = update.seen_at.timestamp()
        was_resolved = bool(group) and group.get("status") == "resolved"
        earliest = min(group["first_seen"], seen) if group else seen
        count = (group["count"] if group else 0) + 1
        self.groups[update.fingerprint] = {
            **(group or {}),
            **_group_fields(update, earliest, time.time()),
            "count": count,
        }
        result = GroupUpsert(count=count, was_resolved=was_resolved)
        self.grouped[event_id] = result
        return result

    async def get_group(self, fingerprint: str) -> Optional[dict]:
        return self.groups.get(fingerprint)

    async def add_affected_user(self, fingerprint: str, user_id: str) -> int:
        users = self.users.setdefault(fingerprint, set())
        users.add(user_id)
        if fingerprint in self.groups:
            self.groups[fingerprint]["users_affected"] = len(users)
        return len(users)

    async def count_events_since(self, project_id: str, since: float) -> int:
        return sum(
            1
            for e in self.events.values()
            if e["project_id"] == project_id and e["created_at"] >= since
        )

    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        expires = self.claims.get(key)
        if expires is not None and expires > now:
            return False
        self.claims[key] = now + ttl_seconds
        return True

    async def release_claim(self, key: str) -> None:
        self.claims.pop(key, None)

    async def get_replay(self, session_id: str) -> Optional[dict]:
        return self.replays.get(session_id)

    async def save_replay(self, record: ReplayRecord) -> int:
        replay = self.replays.setdefault(
            record.session_id,
            {"started_at": record.started_at, "event_count": 0, "chunks": {}},
        )
        for key in (
            "project_id", "device_type", "browser", "os", "url",
            "user_agent", "release", "fingerprint", "error_event_id",
        ):
            value = getattr(record, key)
            if value is not None:
                replay[key] = value
        if record.events and record.chunk_id not in replay["chunks"]:
            replay["chunks"][record.chunk_id] = record.events
            replay["event_count"] += len(record.events)
        replay["last_activity"] = time.time()
        return replay["event_count"]

    async def register_project(
        self,
        project_id: str,
        organization_id: str,
        name: str = "",
        api_keys: tuple[str, ...] = (),
    ) -> None:
        self.projects[project_id] = {"organization_id": organization_id, "name": name}
        for api_key in api_keys:
            self.api_keys[hash_api_key(api_key)] = project_id

    async def set_alert_rules(self, project_id: str, rules: list[AlertRule]) -> None:
        self.alerts[project_id] = list(rules)

    async def set_fingerprint_rules(self, project_id: str, rules: list[dict]) -> None:
        self.rules[project_id] = list(rules)
