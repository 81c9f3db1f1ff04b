"""Test fixtures — in-memory backends, a mocked identity provider.

Learn: Nothing here needs Redis or a running identity service:

1. Settings pick the in-memory queue backend, so QueueSet, the issue
   store and the notification bus are all process-local.
2. The identity client is an AsyncMock; each test sets what the
   upstream "returns" (or raises) and asserts how often it was called.
3. ASGITransport does not run the app lifespan, so the fixture calls
   init_state() itself.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from errorwatch.auth.identity import IdentityClient
from errorwatch.auth.session_cache import Principal
from errorwatch.config import Settings
from errorwatch.main import create_app, init_state
from errorwatch.processing.context import ProcessingContext

SESSION_COOKIE = "better-auth.session_token"
ORG_ID = "org-1"
PROJECT_ID = "proj-1"
API_KEY = "ew_test_key"


@pytest.fixture()
def test_settings():
    return Settings(
        environment="test",
        queue_backend="memory",
        fail_open=False,
        worker_poll_interval=0.01,
        sse_ping_interval=0.05,
    )


@pytest.fixture()
def identity():
    mock = AsyncMock(spec=IdentityClient)
    mock.get_session.return_value = Principal(id="user-1", email="dev@example.com")
    mock.get_onboarding_status.return_value = False
    mock.list_organizations.return_value = [{"id": ORG_ID, "slug": "acme"}]
    return mock


@pytest_asyncio.fixture()
async def processing(test_settings):
    ctx = ProcessingContext.from_settings(test_settings)
    await ctx.store.register_project(PROJECT_ID, ORG_ID, name="Web", api_keys=(API_KEY,))
    yield ctx
    await ctx.aclose()


@pytest_asyncio.fixture()
async def app(test_settings, identity, processing):
    application = create_app(test_settings)
    init_state(application, test_settings, identity=identity, processing=processing)
    return application


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
