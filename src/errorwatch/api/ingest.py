"""Ingest endpoints — the producer side of the pipeline.

Learn: SDKs authenticate with a project API key in ``x-api-key``. Events
and replays are validated, enqueued and acknowledged with 202 and the job
id; processing happens later in the workers. Transactions and log lines
are not queued at all: they are relayed straight to the live dashboard.

An ``Idempotency-Key`` header becomes part of the job id, so an SDK that
retries a timed-out POST does not create a second job. The key is scoped
to the project and queue; another project sending the same key gets its
own job.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request

from errorwatch.queue.jobs import JobPayloadError, QueueName, parse_payload
from errorwatch.realtime.types import NotificationEvent, NotificationType

logger = structlog.get_logger()

router = APIRouter()


def scoped_job_id(
    project_id: str, queue: QueueName, idempotency_key: Optional[str]
) -> Optional[str]:
    if not idempotency_key:
        return None
    return f"{project_id}:{queue.value}:{idempotency_key}"


async def get_project_id(
    request: Request, x_api_key: Optional[str] = Header(None)
) -> str:
    """Resolve the project for an SDK API key (401 if missing or unknown)."""
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing API key")
    project_id = await request.app.state.store.project_for_api_key(x_api_key)
    if project_id is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return project_id


async def _enqueue(
    request: Request,
    queue: QueueName,
    body: dict,
    project_id: str,
    idempotency_key: Optional[str],
) -> dict:
    try:
        payload = parse_payload(queue, {**body, "projectId": project_id})
    except JobPayloadError as e:
        raise HTTPException(status_code=422, detail=str(e))
    job_id = await request.app.state.queues.enqueue(
        queue, payload, job_id=scoped_job_id(project_id, queue, idempotency_key)
    )
    logger.debug("ingest.accepted", queue=queue.value, job_id=job_id, project_id=project_id)
    return {"jobId": job_id}


@router.post("/events", status_code=202)
async def ingest_event(
    request: Request,
    body: dict = Body(...),
    project_id: str = Depends(get_project_id),
    idempotency_key: Optional[str] = Header(None),
):
    return await _enqueue(request, QueueName.EVENTS, body, project_id, idempotency_key)


@router.post("/replays", status_code=202)
async def ingest_replay(
    request: Request,
    body: dict = Body(...),
    project_id: str = Depends(get_project_id),
    idempotency_key: Optional[str] = Header(None),
):
    return await _enqueue(request, QueueName.REPLAYS, body, project_id, idempotency_key)


async def _relay(
    request: Request, kind: NotificationType, project_id: str, body: dict
) -> dict:
    store = request.app.state.store
    organization_id = await store.organization_for_project(project_id)
    if organization_id is None:
        raise HTTPException(status_code=404, detail="Project has no organization")
    receivers = await request.app.state.bus.publish(
        organization_id,
        NotificationEvent(type=kind, project_id=project_id, payload=body),
    )
    return {"delivered": receivers}


@router.post("/transactions", status_code=202)
async def relay_transaction(
    request: Request,
    body: dict = Body(...),
    project_id: str = Depends(get_project_id),
):
    return await _relay(request, NotificationType.TRANSACTION_NEW, project_id, body)


@router.post("/logs", status_code=202)
async def relay_log(
    request: Request,
    body: dict = Body(...),
    project_id: str = Depends(get_project_id),
):
    return await _relay(request, NotificationType.LOG_NEW, project_id, body)
