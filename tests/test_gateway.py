"""Tests for the auth gateway decision function.

Learn: decide() is pure apart from the injected cache and identity
client, so these tests drive it directly with an AsyncMock upstream and
assert both the decision and how many upstream calls it cost.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from errorwatch.auth.gateway import (
    AuthGateway,
    GatewayAction,
    RouteKind,
    classify_route,
    login_url,
)
from errorwatch.auth.identity import IdentityClient, UpstreamUnavailableError
from errorwatch.auth.session_cache import Principal, SessionCache

COOKIE = "better-auth.session_token"
SECURE_COOKIE = "__Secure-better-auth.session_token"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def upstream():
    mock = AsyncMock(spec=IdentityClient)
    mock.get_session.return_value = Principal(id="user-1")
    mock.get_onboarding_status.return_value = False
    mock.list_organizations.return_value = [{"slug": "acme"}]
    return mock


def make_gateway(upstream, clock, fail_open=False, lookup_timeout=1.0):
    return AuthGateway(
        SessionCache(ttl_seconds=30, max_size=10, clock=clock),
        upstream,
        fail_open=fail_open,
        cookie_names=[COOKIE, SECURE_COOKIE],
        lookup_timeout=lookup_timeout,
    )


def signed_in(token="tok"):
    return {COOKIE: token}


# ─── Route classification ─────────────────────────────────


@pytest.mark.parametrize(
    "path,kind",
    [
        ("/", RouteKind.PUBLIC),
        ("/login", RouteKind.PUBLIC),
        ("/invite/abc", RouteKind.PUBLIC),
        ("/api/v1/events", RouteKind.API),
        ("/sse/org-1", RouteKind.API),
        ("/health", RouteKind.API),
        ("/healthz", RouteKind.PROTECTED),
        ("/_next/static/chunk.js", RouteKind.STATIC),
        ("/favicon.ico", RouteKind.STATIC),
        ("/onboarding", RouteKind.ONBOARDING),
        ("/dashboard/acme", RouteKind.PROTECTED),
        ("/loginx", RouteKind.PROTECTED),
    ],
)
def test_classify_route(path, kind):
    assert classify_route(path) is kind


def test_login_url_keeps_path_readable():
    assert login_url("/dashboard/acme") == "/login?redirect=/dashboard/acme"
    assert login_url() == "/login"
    assert login_url("/x", error="auth_unavailable") == "/login?redirect=/x&error=auth_unavailable"


# ─── Pass-through and unauthenticated ─────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/", "/signup", "/api/v1/health", "/_next/app.js"])
async def test_public_api_static_never_validate(upstream, clock, path):
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide(path, signed_in() if path == "/" else {})
    assert decision.action is GatewayAction.PASS
    upstream.get_session.assert_not_called()


@pytest.mark.asyncio
async def test_no_cookie_redirects_to_login_with_original_path(upstream, clock):
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/dashboard/acme/issues", {})
    assert decision.action is GatewayAction.REDIRECT
    assert decision.location == "/login?redirect=/dashboard/acme/issues"
    upstream.get_session.assert_not_called()


@pytest.mark.asyncio
async def test_signed_in_user_on_login_goes_to_dashboard(upstream, clock):
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/login", signed_in())
    assert decision.action is GatewayAction.REDIRECT
    assert decision.location == "/dashboard"


@pytest.mark.asyncio
async def test_secure_cookie_name_is_accepted(upstream, clock):
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/settings", {SECURE_COOKIE: "tok"})
    assert decision.action is GatewayAction.PASS
    assert decision.principal == Principal(id="user-1")


# ─── Session cache interplay ──────────────────────────────


@pytest.mark.asyncio
async def test_second_request_within_ttl_is_a_cache_hit(upstream, clock):
    gateway = make_gateway(upstream, clock)
    await gateway.decide("/settings", signed_in())
    clock.now = 29.0
    decision = await gateway.decide("/settings", signed_in())

    assert decision.action is GatewayAction.PASS
    assert upstream.get_session.await_count == 1


@pytest.mark.asyncio
async def test_after_ttl_exactly_one_fresh_validation(upstream, clock):
    gateway = make_gateway(upstream, clock)
    await gateway.decide("/settings", signed_in())
    clock.now = 31.0
    await gateway.decide("/settings", signed_in())
    await gateway.decide("/settings", signed_in())

    assert upstream.get_session.await_count == 2


@pytest.mark.asyncio
async def test_after_invalidation_revalidates(upstream, clock):
    gateway = make_gateway(upstream, clock)
    await gateway.decide("/settings", signed_in())
    gateway.cache.invalidate("tok")
    await gateway.decide("/settings", signed_in())

    assert upstream.get_session.await_count == 2


@pytest.mark.asyncio
async def test_rejected_session_clears_cookies_and_redirects(upstream, clock):
    upstream.get_session.return_value = None
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/settings", signed_in())

    assert decision.action is GatewayAction.REDIRECT
    assert decision.location == "/login?redirect=/settings"
    assert decision.clear_cookies is True
    assert len(gateway.cache) == 0


# ─── Degraded mode ────────────────────────────────────────


@pytest.mark.asyncio
async def test_upstream_error_fail_open_passes(upstream, clock):
    upstream.get_session.side_effect = UpstreamUnavailableError("down")
    gateway = make_gateway(upstream, clock, fail_open=True)
    decision = await gateway.decide("/settings", signed_in())

    assert decision.action is GatewayAction.PASS
    assert decision.degraded is True
    assert decision.principal is None


@pytest.mark.asyncio
async def test_upstream_error_fail_closed_redirects_with_error(upstream, clock):
    upstream.get_session.side_effect = UpstreamUnavailableError("down")
    gateway = make_gateway(upstream, clock, fail_open=False)
    decision = await gateway.decide("/settings", signed_in())

    assert decision.action is GatewayAction.REDIRECT
    assert "error=auth_unavailable" in decision.location
    assert decision.clear_cookies is True


@pytest.mark.asyncio
async def test_upstream_timeout_counts_as_unavailable(upstream, clock):
    async def hang(cookie_header):
        await asyncio.sleep(5)

    upstream.get_session.side_effect = hang
    gateway = make_gateway(upstream, clock, fail_open=False, lookup_timeout=0.01)
    decision = await gateway.decide("/settings", signed_in())

    assert decision.action is GatewayAction.REDIRECT
    assert "error=auth_unavailable" in decision.location


# ─── Dashboard root and onboarding ────────────────────────


@pytest.mark.asyncio
async def test_dashboard_root_needs_onboarding(upstream, clock):
    upstream.get_onboarding_status.return_value = True
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/dashboard", signed_in())

    assert decision.action is GatewayAction.REDIRECT
    assert decision.location == "/onboarding"


@pytest.mark.asyncio
async def test_dashboard_root_goes_to_first_organization(upstream, clock):
    upstream.list_organizations.return_value = [{"slug": "acme"}, {"slug": "other"}]
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/dashboard", signed_in())

    assert decision.action is GatewayAction.REDIRECT
    assert decision.location == "/dashboard/acme"


@pytest.mark.asyncio
async def test_dashboard_root_without_organizations_goes_to_onboarding(upstream, clock):
    upstream.list_organizations.return_value = []
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/dashboard/", signed_in())

    assert decision.location == "/onboarding"


@pytest.mark.asyncio
async def test_dashboard_root_lookup_failure_fail_closed_is_503(upstream, clock):
    upstream.list_organizations.side_effect = UpstreamUnavailableError("down")
    gateway = make_gateway(upstream, clock, fail_open=False)
    decision = await gateway.decide("/dashboard", signed_in())

    assert decision.action is GatewayAction.REJECT
    assert decision.status_code == 503


@pytest.mark.asyncio
async def test_dashboard_root_lookup_failure_fail_open_passes(upstream, clock):
    upstream.get_onboarding_status.side_effect = UpstreamUnavailableError("down")
    gateway = make_gateway(upstream, clock, fail_open=True)
    decision = await gateway.decide("/dashboard", signed_in())

    assert decision.action is GatewayAction.PASS
    assert decision.degraded is True


@pytest.mark.asyncio
async def test_onboarded_user_leaves_onboarding(upstream, clock):
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/onboarding", signed_in())

    assert decision.action is GatewayAction.REDIRECT
    assert decision.location == "/dashboard"


@pytest.mark.asyncio
async def test_user_still_onboarding_stays(upstream, clock):
    upstream.get_onboarding_status.return_value = True
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/onboarding", signed_in())

    assert decision.action is GatewayAction.PASS


@pytest.mark.asyncio
async def test_unknown_onboarding_status_passes(upstream, clock):
    upstream.get_onboarding_status.return_value = None
    gateway = make_gateway(upstream, clock)
    decision = await gateway.decide("/dashboard/acme", signed_in())

    assert decision.action is GatewayAction.PASS
    assert decision.principal == Principal(id="user-1")
