"""IdentityClient tests: "said no" versus "could not be reached"."""

import httpx
import pytest

from errorwatch.auth.identity import IdentityClient, UpstreamUnavailableError
from errorwatch.auth.session_cache import Principal


def client_for(handler) -> IdentityClient:
    return IdentityClient(
        "http://identity",
        "http://api",
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_session_forwards_cookie_header():
    seen = {}

    def handler(request):
        seen["cookie"] = request.headers.get("cookie")
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"user": {"id": 7, "email": "a@b.c"}})

    principal = await client_for(handler).get_session("better-auth.session_token=tok")

    assert principal == Principal(id="7", email="a@b.c")
    assert seen == {
        "cookie": "better-auth.session_token=tok",
        "url": "http://identity/api/auth/get-session",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401),
        httpx.Response(200, json=None),
        httpx.Response(200, json={"user": {}}),
        httpx.Response(200, text="<html>"),
    ],
)
async def test_session_rejections_are_none(response):
    assert await client_for(lambda request: response).get_session("c=1") is None


@pytest.mark.asyncio
async def test_unreachable_provider_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamUnavailableError):
        await client_for(handler).get_session("c=1")


@pytest.mark.asyncio
async def test_onboarding_status():
    identity = client_for(lambda request: httpx.Response(200, json={"needsOnboarding": True}))
    assert await identity.get_onboarding_status("c=1") is True

    unknown = client_for(lambda request: httpx.Response(200, json={"other": 1}))
    assert await unknown.get_onboarding_status("c=1") is None


@pytest.mark.asyncio
async def test_organizations_filters_non_objects():
    identity = client_for(
        lambda request: httpx.Response(200, json=[{"slug": "acme"}, "junk", {"slug": "b"}])
    )
    assert await identity.list_organizations("c=1") == [{"slug": "acme"}, {"slug": "b"}]
