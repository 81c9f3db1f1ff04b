"""Auth gateway middleware — applies the gateway decision to each request.

Learn: All routing logic lives in AuthGateway.decide(); this layer only
translates its structured decision into HTTP:

- pass     → principal on request.state, call the downstream app
- redirect → 307 to the target, session cookies deleted when asked
- reject   → 503 plain text

Every request also gets a request id, taken from X-Request-ID or
generated, bound to structlog's contextvars and echoed back.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from errorwatch.auth.gateway import GatewayAction, GatewayDecision

logger = structlog.get_logger()


class AuthGatewayMiddleware(BaseHTTPMiddleware):
    """Gate every inbound request through the app's AuthGateway."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        gateway = request.app.state.gateway
        decision = await gateway.decide(
            request.url.path,
            request.cookies,
            request.headers.get("cookie", ""),
        )

        if decision.action is GatewayAction.PASS:
            request.state.principal = decision.principal
            request.state.auth_degraded = decision.degraded
            response = await call_next(request)
        else:
            response = self._terminal_response(decision, gateway.cookie_names)
            logger.info(
                "gateway.intercepted",
                path=request.url.path,
                action=decision.action.value,
                reason=decision.reason,
            )

        response.headers["X-Request-ID"] = request_id
        return response

    @staticmethod
    def _terminal_response(decision: GatewayDecision, cookie_names) -> Response:
        if decision.action is GatewayAction.REDIRECT:
            response: Response = RedirectResponse(decision.location, status_code=307)
        else:
            response = PlainTextResponse(
                "Service unavailable", status_code=decision.status_code or 503
            )
        if decision.clear_cookies:
            for name in cookie_names:
                response.delete_cookie(name)
        return response
