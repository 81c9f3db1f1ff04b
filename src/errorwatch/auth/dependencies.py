"""FastAPI auth dependencies.

Learn: The gateway middleware lets API routes through without a session
check. Routes that still need a user (the SSE stream) declare it with
Depends(get_current_principal), which reuses the gateway's cache-backed
resolver so a stream reconnect does not hit the identity provider twice.
Organization-scoped routes add Depends(get_organization_member), which
checks the caller's organization list before anything is streamed.
"""

import asyncio

import structlog
from fastapi import Depends, HTTPException, Request

from errorwatch.auth.gateway import AuthGateway, SessionStatus
from errorwatch.auth.identity import UpstreamUnavailableError
from errorwatch.auth.session_cache import Principal

logger = structlog.get_logger()


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


async def get_current_principal(request: Request) -> Principal:
    """Resolve the caller's session (required — 401 if missing or invalid)."""
    gateway = get_gateway(request)
    token = gateway.session_token(request.cookies)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    resolution = await gateway.resolve_session(
        token, request.headers.get("cookie", "")
    )
    if resolution.status is SessionStatus.UNAVAILABLE:
        raise HTTPException(
            status_code=503,
            detail="Authentication service unavailable",
            headers={"Retry-After": "5"},
        )
    if resolution.status is SessionStatus.INVALID or resolution.principal is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return resolution.principal


def _organization_keys(organization: dict) -> set[str]:
    return {
        str(organization[key])
        for key in ("id", "slug")
        if organization.get(key) is not None
    }


async def get_organization_member(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Require the caller to belong to ``organization_id`` (id or slug)."""
    gateway = get_gateway(request)
    try:
        organizations = await asyncio.wait_for(
            gateway.identity.list_organizations(request.headers.get("cookie", "")),
            timeout=gateway.lookup_timeout,
        )
    except (UpstreamUnavailableError, asyncio.TimeoutError):
        raise HTTPException(
            status_code=503,
            detail="Organization service unavailable",
            headers={"Retry-After": "5"},
        )
    if not any(organization_id in _organization_keys(o) for o in organizations or ()):
        logger.warning(
            "auth.not_a_member",
            organization_id=organization_id,
            principal_id=principal.id,
        )
        raise HTTPException(status_code=403, detail="Forbidden")
    return principal
