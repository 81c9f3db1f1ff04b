"""Auth gateway — the routing decision for every dashboard request.

Learn: The decision is a plain async function from (path, cookies) to a
``GatewayDecision``. It never touches a Request or Response object, so the
whole state machine is testable without an HTTP server; the Starlette
middleware in ``errorwatch.middleware.auth_gateway`` only applies it.

Evaluation order:
1. classify the route (public / api / static / onboarding / protected)
2. session cookie on /login or /signup → /dashboard
3. public, api and static routes pass without a session check
4. no session cookie → /login?redirect=<path>
5. resolve the session (cache, then identity provider)
6. /dashboard root → first organization, or /onboarding
7. onboarding gate for /onboarding and /dashboard/* paths

Exactly one terminal action comes out: pass, redirect or reject.
"""

import asyncio
import enum
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence
from urllib.parse import urlencode

import structlog

from errorwatch.auth.identity import IdentityClient, UpstreamUnavailableError
from errorwatch.auth.session_cache import Principal, SessionCache

logger = structlog.get_logger()

PUBLIC_ROUTES = ("/", "/login", "/signup", "/invite")
AUTH_ROUTES = ("/login", "/signup")
API_PREFIXES = ("/api", "/sse", "/health")
STATIC_PREFIXES = ("/_next", "/static", "/favicon.ico")
ONBOARDING_PREFIX = "/onboarding"
DASHBOARD_ROOT = "/dashboard"

AUTH_UNAVAILABLE = "auth_unavailable"


class RouteKind(str, enum.Enum):
    PUBLIC = "public"
    API = "api"
    STATIC = "static"
    ONBOARDING = "onboarding"
    PROTECTED = "protected"


class GatewayAction(str, enum.Enum):
    PASS = "pass"
    REDIRECT = "redirect"
    REJECT = "reject"


class SessionStatus(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class SessionResolution:
    status: SessionStatus
    principal: Optional[Principal] = None
    cached: bool = False


@dataclass(frozen=True)
class GatewayDecision:
    """Structured outcome of the gateway for one request."""

    action: GatewayAction
    location: Optional[str] = None
    status_code: Optional[int] = None
    principal: Optional[Principal] = None
    clear_cookies: bool = False
    degraded: bool = False
    reason: str = ""

    @classmethod
    def pass_through(
        cls,
        principal: Optional[Principal] = None,
        degraded: bool = False,
        reason: str = "",
    ) -> "GatewayDecision":
        return cls(
            GatewayAction.PASS, principal=principal, degraded=degraded, reason=reason
        )

    @classmethod
    def redirect(
        cls, location: str, clear_cookies: bool = False, reason: str = ""
    ) -> "GatewayDecision":
        return cls(
            GatewayAction.REDIRECT,
            location=location,
            clear_cookies=clear_cookies,
            reason=reason,
        )

    @classmethod
    def reject(cls, status_code: int = 503, reason: str = "") -> "GatewayDecision":
        return cls(GatewayAction.REJECT, status_code=status_code, reason=reason)


def _matches(path: str, route: str) -> bool:
    return path == route or path.startswith(route.rstrip("/") + "/")


def classify_route(path: str) -> RouteKind:
    if path == "/" or any(_matches(path, r) for r in PUBLIC_ROUTES if r != "/"):
        return RouteKind.PUBLIC
    if any(_matches(path, p) for p in API_PREFIXES):
        return RouteKind.API
    if any(_matches(path, p) for p in STATIC_PREFIXES):
        return RouteKind.STATIC
    if _matches(path, ONBOARDING_PREFIX):
        return RouteKind.ONBOARDING
    return RouteKind.PROTECTED


def is_auth_route(path: str) -> bool:
    return any(_matches(path, r) for r in AUTH_ROUTES)


def login_url(redirect_path: Optional[str] = None, error: Optional[str] = None) -> str:
    params = {}
    if redirect_path:
        params["redirect"] = redirect_path
    if error:
        params["error"] = error
    if not params:
        return "/login"
    return "/login?" + urlencode(params, safe="/")


class AuthGateway:
    """Session-checking gate in front of the dashboard.

    Learn: The cache and identity client are injected, never global.
    ``fail_open`` decides what happens when the identity provider or the
    onboarding service cannot be reached: let the request continue in a
    degraded trust mode, or refuse it.
    """

    def __init__(
        self,
        cache: SessionCache,
        identity: IdentityClient,
        *,
        fail_open: bool,
        cookie_names: Sequence[str],
        lookup_timeout: float = 5.0,
    ):
        self.cache = cache
        self.identity = identity
        self.fail_open = fail_open
        self.cookie_names = tuple(cookie_names)
        self.lookup_timeout = lookup_timeout

    def session_token(self, cookies: Mapping[str, str]) -> Optional[str]:
        for name in self.cookie_names:
            token = cookies.get(name)
            if token:
                return token
        return None

    async def resolve_session(self, token: str, cookie_header: str) -> SessionResolution:
        """Resolve a session token through the cache, then upstream."""
        principal = self.cache.get(token)
        if principal is not None:
            return SessionResolution(SessionStatus.VALID, principal, cached=True)

        try:
            principal = await asyncio.wait_for(
                self.identity.get_session(cookie_header), self.lookup_timeout
            )
        except (UpstreamUnavailableError, asyncio.TimeoutError):
            return SessionResolution(SessionStatus.UNAVAILABLE)

        if principal is None:
            self.cache.invalidate(token)
            return SessionResolution(SessionStatus.INVALID)

        self.cache.put(token, principal)
        return SessionResolution(SessionStatus.VALID, principal)

    async def decide(
        self, path: str, cookies: Mapping[str, str], cookie_header: str = ""
    ) -> GatewayDecision:
        kind = classify_route(path)
        token = self.session_token(cookies)

        if token and is_auth_route(path):
            return GatewayDecision.redirect(DASHBOARD_ROOT, reason="already_authenticated")

        if kind in (RouteKind.PUBLIC, RouteKind.API, RouteKind.STATIC):
            return GatewayDecision.pass_through(reason=kind.value)

        if not token:
            return GatewayDecision.redirect(login_url(path), reason="no_session")

        resolution = await self.resolve_session(token, cookie_header)

        if resolution.status is SessionStatus.INVALID:
            return GatewayDecision.redirect(
                login_url(path), clear_cookies=True, reason="session_invalid"
            )

        if resolution.status is SessionStatus.UNAVAILABLE:
            logger.warning("gateway.auth_unavailable", path=path, fail_open=self.fail_open)
            if self.fail_open:
                return GatewayDecision.pass_through(degraded=True, reason=AUTH_UNAVAILABLE)
            return GatewayDecision.redirect(
                login_url(path, error=AUTH_UNAVAILABLE),
                clear_cookies=True,
                reason=AUTH_UNAVAILABLE,
            )

        principal = resolution.principal

        if path in (DASHBOARD_ROOT, DASHBOARD_ROOT + "/"):
            return await self._dashboard_root(principal, cookie_header)

        if kind is RouteKind.ONBOARDING or path.startswith(DASHBOARD_ROOT + "/"):
            return await self._onboarding_gate(kind, principal, cookie_header)

        return GatewayDecision.pass_through(principal)

    # ─── Onboarding / organization lookups ────────────────

    async def _dashboard_root(
        self, principal: Principal, cookie_header: str
    ) -> GatewayDecision:
        """Send /dashboard to the first organization, or to onboarding.

        Learn: Both lookups are independent, so they run concurrently
        and are joined under one timeout.
        """
        try:
            needs_onboarding, organizations = await asyncio.wait_for(
                asyncio.gather(
                    self.identity.get_onboarding_status(cookie_header),
                    self.identity.list_organizations(cookie_header),
                ),
                self.lookup_timeout,
            )
        except (UpstreamUnavailableError, asyncio.TimeoutError):
            return self._lookup_failed(principal, "dashboard_lookup_failed")

        if needs_onboarding:
            return GatewayDecision.redirect(ONBOARDING_PREFIX, reason="needs_onboarding")

        slug = organizations[0].get("slug") if organizations else None
        if slug:
            return GatewayDecision.redirect(
                f"{DASHBOARD_ROOT}/{slug}", reason="first_organization"
            )
        return GatewayDecision.redirect(ONBOARDING_PREFIX, reason="no_organizations")

    async def _onboarding_gate(
        self, kind: RouteKind, principal: Principal, cookie_header: str
    ) -> GatewayDecision:
        try:
            needs_onboarding = await asyncio.wait_for(
                self.identity.get_onboarding_status(cookie_header),
                self.lookup_timeout,
            )
        except (UpstreamUnavailableError, asyncio.TimeoutError):
            return self._lookup_failed(principal, "onboarding_lookup_failed")

        if needs_onboarding is None:
            # Unknown status: neither force nor skip onboarding
            return GatewayDecision.pass_through(principal)
        if needs_onboarding and kind is not RouteKind.ONBOARDING:
            return GatewayDecision.redirect(ONBOARDING_PREFIX, reason="needs_onboarding")
        if not needs_onboarding and kind is RouteKind.ONBOARDING:
            return GatewayDecision.redirect(DASHBOARD_ROOT, reason="already_onboarded")
        return GatewayDecision.pass_through(principal)

    def _lookup_failed(self, principal: Principal, reason: str) -> GatewayDecision:
        logger.warning("gateway.lookup_failed", reason=reason, fail_open=self.fail_open)
        if self.fail_open:
            return GatewayDecision.pass_through(principal, degraded=True, reason=reason)
        return GatewayDecision.reject(503, reason=reason)
