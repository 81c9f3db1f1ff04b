"""Alert handler — evaluates a project's alert rules for one error group.

Learn: Three rule types:

    new_error    fires when the group was just created
    regression   fires when a resolved group recurred
    threshold    fires when the project saw >= N events in the last
                 window, at most once per window (cooldown)

Delivery is per (job, rule). Each delivery is claimed before sending, so
a retried job does not email the same person twice. A failed send
releases its claim and fails the job, which retries only the deliveries
that have not gone out yet.

Channels: email (Resend HTTP API), webhook (JSON POST), slack (incoming
webhook blocks).
"""

import time
from typing import Optional

import httpx
import structlog

from errorwatch.processing.context import ProcessingContext
from errorwatch.processing.store import AlertRule
from errorwatch.queue.jobs import AlertJob, Job
from errorwatch.realtime.types import NotificationEvent, NotificationType

logger = structlog.get_logger()

RESEND_URL = "https://api.resend.com/emails"
DELIVERY_CLAIM_TTL = 7 * 86400


class AlertDeliveryError(Exception):
    """A notification channel did not accept the alert."""


class AlertNotifier:
    """Sends alerts over HTTP. One instance per process."""

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        email_from: str = "ErrorWatch <alerts@errorwatch.local>",
        dashboard_url: str = "http://localhost:3001",
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.dashboard_url = dashboard_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    def issue_url(self, fingerprint: str) -> str:
        return f"{self.dashboard_url}/dashboard/issues/{fingerprint}"

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> None:
        try:
            response = await self._http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise AlertDeliveryError(f"{url}: {e}") from e
        if response.is_error:
            raise AlertDeliveryError(f"{url}: HTTP {response.status_code}")

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.resend_api_key:
            logger.warning("alert.email_not_configured", to=to)
            return False
        await self._post(
            RESEND_URL,
            {"from": self.email_from, "to": [to], "subject": subject, "html": html},
            headers={"Authorization": f"Bearer {self.resend_api_key}"},
        )
        logger.info("alert.email_sent", to=to)
        return True

    async def send_webhook(self, url: str, payload: dict) -> bool:
        await self._post(url, payload)
        logger.info("alert.webhook_sent", url=url)
        return True

    async def send_slack(self, url: str, project_name: str, group: dict, fingerprint: str) -> bool:
        location = f"{group.get('file')}:{group.get('line')}"
        await self._post(
            url,
            {
                "blocks": [
                    {
                        "type": "header",
                        "text": {
                            "type": "plain_text",
                            "text": f"New Error in {project_name}",
                            "emoji": True,
                        },
                    },
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": (
                                f"*Error:* `{group.get('message')}`\n"
                                f"*Location:* `{location}`\n"
                                f"*Events:* {group.get('count')}"
                            ),
                        },
                    },
                    {
                        "type": "actions",
                        "elements": [
                            {
                                "type": "button",
                                "text": {"type": "plain_text", "text": "View Details"},
                                "url": self.issue_url(fingerprint),
                                "style": "primary",
                            }
                        ],
                    },
                ]
            },
        )
        logger.info("alert.slack_sent")
        return True


# ─── Rule evaluation ──────────────────────────────────────


def email_subject(rule: AlertRule, project_name: str, group: dict) -> str:
    if rule.type == "threshold":
        return (
            f"[{project_name}] Alert: {group.get('count')} errors "
            f"in {rule.window_minutes} minutes"
        )
    message = str(group.get("message", ""))
    short = message[:50] + ("..." if len(message) > 50 else "")
    if rule.type == "regression":
        return f"[{project_name}] Regression: {short}"
    return f"[{project_name}] Error Alert: {short}"


def email_body(notifier: AlertNotifier, group: dict, fingerprint: str) -> str:
    return (
        f"<p><strong>{group.get('message')}</strong></p>"
        f"<p>{group.get('file')}:{group.get('line')} "
        f"&middot; {group.get('count')} events</p>"
        f'<p><a href="{notifier.issue_url(fingerprint)}">View in ErrorWatch</a></p>'
    )


async def should_trigger(ctx: ProcessingContext, rule: AlertRule, alert: AlertJob) -> bool:
    if rule.type == "new_error":
        return alert.is_new_group
    if rule.type == "regression":
        return alert.is_regression
    if rule.type == "threshold" and rule.threshold and rule.window_minutes:
        window = rule.window_minutes * 60
        recent = await ctx.store.count_events_since(alert.project_id, time.time() - window)
        if recent < rule.threshold:
            return False
        return await ctx.store.claim_once(f"cooldown:{rule.id}", window)
    return False


async def deliver(
    ctx: ProcessingContext,
    rule: AlertRule,
    project_name: str,
    group: dict,
    fingerprint: str,
) -> bool:
    """Send one rule's notification; False if the channel is not configured."""
    notifier = ctx.notifier
    config = rule.config
    if rule.channel == "email" and config.get("email"):
        return await notifier.send_email(
            config["email"],
            email_subject(rule, project_name, group),
            email_body(notifier, group, fingerprint),
        )
    if rule.channel == "webhook" and config.get("webhookUrl"):
        return await notifier.send_webhook(
            config["webhookUrl"],
            {
                "type": rule.type,
                "projectName": project_name,
                "error": {
                    "message": group.get("message"),
                    "file": group.get("file"),
                    "line": group.get("line"),
                    "count": group.get("count"),
                    "fingerprint": fingerprint,
                },
            },
        )
    if rule.channel == "slack" and config.get("slackWebhook"):
        return await notifier.send_slack(config["slackWebhook"], project_name, group, fingerprint)

    logger.warning("alert.channel_not_configured", rule_id=rule.id, channel=rule.channel)
    return False


async def process_alert(ctx: ProcessingContext, job: Job) -> list[str]:
    """Returns the ids of the rules that were delivered by this attempt."""
    alert: AlertJob = job.typed_payload()
    rules = [r for r in await ctx.store.alert_rules(alert.project_id) if r.enabled]
    if not rules:
        return []

    group = await ctx.store.get_group(alert.fingerprint)
    if group is None:
        logger.warning("alert.group_missing", fingerprint=alert.fingerprint)
        return []
    project_name = await ctx.store.project_name(alert.project_id)

    delivered: list[str] = []
    failures: list[str] = []
    for rule in rules:
        if not await should_trigger(ctx, rule, alert):
            continue

        claim = f"alert:{job.id}:{rule.id}"
        if not await ctx.store.claim_once(claim, DELIVERY_CLAIM_TTL):
            logger.debug("alert.already_delivered", rule_id=rule.id, job_id=job.id)
            continue

        try:
            sent = await deliver(ctx, rule, project_name, group, alert.fingerprint)
        except AlertDeliveryError as e:
            await ctx.store.release_claim(claim)
            if rule.type == "threshold":
                await ctx.store.release_claim(f"cooldown:{rule.id}")
            logger.error("alert.delivery_failed", rule_id=rule.id, error=str(e))
            failures.append(rule.id)
            continue
        if sent:
            delivered.append(rule.id)

    if delivered:
        await ctx.publish(
            alert.project_id,
            NotificationEvent(
                type=NotificationType.ALERT_TRIGGERED,
                project_id=alert.project_id,
                payload={
                    "fingerprint": alert.fingerprint,
                    "message": alert.message,
                    "level": alert.level,
                    "rules": delivered,
                },
            ),
        )

    if failures:
        raise AlertDeliveryError(f"Delivery failed for rules: {', '.join(failures)}")
    return delivered
