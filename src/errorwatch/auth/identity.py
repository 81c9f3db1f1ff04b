"""HTTP client for the upstream identity and onboarding services.

Learn: The gateway never validates sessions itself. It forwards the
browser's Cookie header to the identity provider and trusts its answer.
Two kinds of "no" are kept apart:

- the provider answered and said no (non-2xx, or no ``user.id``) → the
  caller gets ``None`` and treats the session as unauthenticated;
- the provider could not be reached (connect error, timeout) →
  ``UpstreamUnavailableError``, which the gateway maps to its
  fail-open / fail-closed policy.
"""

from typing import Any, Optional

import httpx
import structlog

from errorwatch.auth.session_cache import Principal

logger = structlog.get_logger()

SESSION_PATH = "/api/auth/get-session"
ONBOARDING_STATUS_PATH = "/api/v1/onboarding/status"
ORGANIZATIONS_PATH = "/api/v1/organizations"


class UpstreamUnavailableError(Exception):
    """An upstream service could not be reached or timed out."""


class IdentityClient:
    """Thin async wrapper over the identity provider and onboarding API."""

    def __init__(
        self,
        identity_url: str,
        api_url: str,
        timeout: float = 5.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.identity_url = identity_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, url: str, cookie_header: str) -> httpx.Response:
        headers = {"Cookie": cookie_header} if cookie_header else {}
        try:
            return await self._http.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("upstream.unavailable", url=url, error=str(e))
            raise UpstreamUnavailableError(f"{url}: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    async def get_session(self, cookie_header: str) -> Optional[Principal]:
        """Validate the session cookies. None means "not authenticated"."""
        response = await self._get(self.identity_url + SESSION_PATH, cookie_header)
        if not response.is_success:
            logger.info("session.rejected", status_code=response.status_code)
            return None

        data = self._json(response)
        user = data.get("user") if isinstance(data, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            return None
        return Principal(
            id=str(user["id"]),
            email=user.get("email"),
            name=user.get("name"),
        )

    async def get_onboarding_status(self, cookie_header: str) -> Optional[bool]:
        """Return ``needsOnboarding``, or None when the answer is unknown."""
        response = await self._get(
            self.api_url + ONBOARDING_STATUS_PATH, cookie_header
        )
        if not response.is_success:
            return None
        data = self._json(response)
        if not isinstance(data, dict) or "needsOnboarding" not in data:
            return None
        return bool(data["needsOnboarding"])

    async def list_organizations(self, cookie_header: str) -> Optional[list[dict]]:
        """Return the caller's organizations, or None on a non-OK answer."""
        response = await self._get(self.api_url + ORGANIZATIONS_PATH, cookie_header)
        if not response.is_success:
            return None
        data = self._json(response)
        if not isinstance(data, list):
            return None
        return [org for org in data if isinstance(org, dict)]
