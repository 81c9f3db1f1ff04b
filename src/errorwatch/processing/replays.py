"""Replay handler — stores a session-replay bundle next to its error.

Learn: A replay job carries the error that triggered it plus the
recorded DOM events (gzip+base64, or plain base64 JSON from older SDKs).
The error is grouped like any other occurrence, with a simpler
fingerprint (project, message, file, line). Events are only kept for
fatal/error levels; lower levels still group the error but store no
replay.

A session id belongs to the project that first reported it. A job that
names someone else's session fails permanently.
"""

import base64
import binascii
import gzip
import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog

from errorwatch.processing.context import ProcessingContext
from errorwatch.processing.fingerprint import scrub_pii
from errorwatch.processing.store import GroupUpdate, ReplayRecord
from errorwatch.queue.jobs import AlertJob, Job, QueueName, ReplayJob
from errorwatch.queue.worker import PermanentJobError
from errorwatch.realtime.types import NotificationEvent, NotificationType

logger = structlog.get_logger()

REPLAY_LEVELS = ("fatal", "error")
PRE_ERROR_WINDOW_SECONDS = 60

MOBILE_RE = re.compile(r"mobile|android|iphone|ipod|blackberry|opera mini|iemobile")
TABLET_RE = re.compile(r"ipad|tablet|playbook|silk")


class ReplayOwnershipError(PermanentJobError):
    """The session id is already owned by another project."""


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str = "desktop"
    browser: str = "Unknown"
    os: str = "Unknown"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo()
    ua = user_agent.lower()

    device_type = "desktop"
    if MOBILE_RE.search(ua):
        device_type = "mobile"
    elif TABLET_RE.search(ua):
        device_type = "tablet"

    browser = "Unknown"
    if "firefox" in ua:
        browser = "Firefox"
    elif "edg" in ua:
        browser = "Edge"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    elif "opera" in ua or "opr" in ua:
        browser = "Opera"

    os_name = "Unknown"
    if "windows" in ua:
        os_name = "Windows"
    elif "mac os" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    elif "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"

    return DeviceInfo(device_type, browser, os_name)


def decode_events(encoded: str) -> list:
    """gzip+base64 JSON array, falling back to plain base64 JSON. [] if neither."""
    try:
        raw = base64.b64decode(encoded)
    except (binascii.Error, ValueError):
        return []
    for decode in (gzip.decompress, lambda b: b):
        try:
            events = json.loads(decode(raw).decode("utf-8"))
        except (OSError, EOFError, UnicodeDecodeError, ValueError):
            continue
        return events if isinstance(events, list) else []
    return []


def replay_fingerprint(project_id: str, message: str, file: str, line: int) -> str:
    return hashlib.sha1(f"{project_id}|{message}|{file}|{line}".encode()).hexdigest()


async def process_replay(ctx: ProcessingContext, job: Job) -> Optional[str]:
    """Returns the error fingerprint, if the job carried an error message."""
    replay: ReplayJob = job.typed_payload()
    error = replay.error
    capture = error.level in REPLAY_LEVELS
    error_time = datetime.fromtimestamp(replay.timestamp / 1000, tz=timezone.utc)

    existing = await ctx.store.get_replay(replay.session_id)
    if existing and existing.get("project_id") != replay.project_id:
        raise ReplayOwnershipError(
            f"Session {replay.session_id} does not belong to project {replay.project_id}"
        )

    fingerprint = None
    if error.message:
        file = error.file or replay.url or "unknown"
        line = error.line or 0
        message = scrub_pii(error.message)
        stack = scrub_pii(error.stack) if error.stack else message
        fingerprint = replay_fingerprint(replay.project_id, error.message, file, line)

        recorded = await ctx.store.record_event(
            job.id,
            replay.project_id,
            fingerprint,
            {
                "message": message,
                "stack": stack,
                "url": replay.url,
                "level": error.level,
                "sessionId": replay.session_id if capture else None,
                "release": replay.release,
            },
            error_time,
        )
        if not recorded:
            logger.debug("replay.redelivered", job_id=job.id, fingerprint=fingerprint)
        grouped = await ctx.store.upsert_group(
            GroupUpdate(
                project_id=replay.project_id,
                fingerprint=fingerprint,
                message=message,
                file=file,
                line=line,
                level=error.level,
                seen_at=error_time,
                url=replay.url,
            ),
            job.id,
        )

        await ctx.queues.enqueue(
            QueueName.ALERTS,
            AlertJob(
                project_id=replay.project_id,
                fingerprint=fingerprint,
                is_new_group=grouped.is_new,
                is_regression=grouped.was_resolved,
                level=error.level,
                message=error.message,
            ),
            job_id=f"{job.id}:alert",
        )

    if not (capture and replay.events):
        logger.debug("replay.not_captured", session_id=replay.session_id, level=error.level)
        return fingerprint

    events = decode_events(replay.events)
    device = parse_user_agent(replay.user_agent)
    total = await ctx.store.save_replay(
        ReplayRecord(
            session_id=replay.session_id,
            project_id=replay.project_id,
            started_at=error_time.timestamp() - PRE_ERROR_WINDOW_SECONDS,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            url=replay.url,
            user_agent=replay.user_agent,
            release=replay.release,
            fingerprint=fingerprint,
            error_event_id=job.id if fingerprint else None,
            chunk_id=job.id,
            events=events,
        )
    )
    logger.info(
        "replay.stored",
        session_id=replay.session_id,
        new_session=existing is None,
        events=len(events),
        total_events=total,
    )

    await ctx.publish(
        replay.project_id,
        NotificationEvent(
            type=NotificationType.REPLAY_NEW,
            project_id=replay.project_id,
            payload={
                "sessionId": replay.session_id,
                "fingerprint": fingerprint,
                "deviceType": device.device_type,
                "browser": device.browser,
            },
        ),
    )
    return fingerprint
