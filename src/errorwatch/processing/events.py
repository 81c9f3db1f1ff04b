"""Event handler — groups one raw occurrence into an issue.

Learn: The steps, in order:

    1. scrub PII from message and stack
    2. fingerprint (custom project rule first, generated otherwise)
    3. record the occurrence under the job id (SET NX)
    4. upsert the group: count += 1, reopen if resolved
    5. affected-user count, alert job, live notification

Redelivery is safe at every point. Step 4 is keyed by the job id: the
store counts an event once and hands the stored outcome back to later
attempts, so a retry always goes on to step 5. The alert job has a
deterministic id, so enqueueing it twice is a no-op.
"""

from dataclasses import dataclass

import structlog

from errorwatch.processing.context import ProcessingContext
from errorwatch.processing.fingerprint import (
    extract_error_type,
    generate_fingerprint,
    match_fingerprint_rule,
    scrub_pii,
)
from errorwatch.processing.store import GroupUpdate, GroupUpsert
from errorwatch.queue.jobs import AlertJob, EventJob, Job, QueueName
from errorwatch.realtime.types import NotificationEvent, NotificationType

logger = structlog.get_logger()


@dataclass(frozen=True)
class EventResult:
    fingerprint: str
    is_new_group: bool
    is_regression: bool
    redelivered: bool = False


def notification_type(result: GroupUpsert) -> NotificationType:
    if result.was_resolved:
        return NotificationType.ISSUE_REGRESSED
    if result.is_new:
        return NotificationType.ISSUE_NEW
    return NotificationType.ISSUE_UPDATED


async def resolve_fingerprint(ctx: ProcessingContext, event: EventJob) -> str:
    rules = await ctx.store.fingerprint_rules(event.project_id)
    custom = match_fingerprint_rule(event.project_id, event.message, rules)
    if custom:
        logger.debug("event.custom_fingerprint", project_id=event.project_id)
        return custom
    return generate_fingerprint(
        event.project_id, event.message, event.file, event.line, event.stack, event.column
    )


async def process_event(ctx: ProcessingContext, job: Job) -> EventResult:
    event: EventJob = job.typed_payload()
    message = scrub_pii(event.message)
    stack = scrub_pii(event.stack)
    fingerprint = await resolve_fingerprint(ctx, event)

    document = event.model_dump(mode="json", by_alias=True)
    document.update(message=message, stack=stack)

    recorded = await ctx.store.record_event(
        job.id, event.project_id, fingerprint, document, event.created_at
    )
    if not recorded:
        logger.info("event.redelivered", job_id=job.id, fingerprint=fingerprint)
    grouped = await ctx.store.upsert_group(
        GroupUpdate(
            project_id=event.project_id,
            fingerprint=fingerprint,
            message=message,
            file=event.file,
            line=event.line,
            level=event.level,
            seen_at=event.created_at,
            url=event.url,
            status_code=event.status_code,
        ),
        job.id,
    )

    if event.user_id:
        await ctx.store.add_affected_user(fingerprint, event.user_id)

    await ctx.queues.enqueue(
        QueueName.ALERTS,
        AlertJob(
            project_id=event.project_id,
            fingerprint=fingerprint,
            is_new_group=grouped.is_new,
            is_regression=grouped.was_resolved,
            level=event.level,
            message=event.message,
        ),
        job_id=f"{job.id}:alert",
    )

    await ctx.publish(
        event.project_id,
        NotificationEvent(
            type=notification_type(grouped),
            project_id=event.project_id,
            payload={"fingerprint": fingerprint, "message": message, "level": event.level},
        ),
    )

    logger.debug(
        "event.processed",
        job_id=job.id,
        fingerprint=fingerprint,
        is_new_group=grouped.is_new,
        project_id=event.project_id,
        error_type=extract_error_type(event.message),
    )
    return EventResult(
        fingerprint, grouped.is_new, grouped.was_resolved, redelivered=not recorded
    )
