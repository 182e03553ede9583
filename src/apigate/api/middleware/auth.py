"""API key authentication and rate-limit middleware.

Runs the request authenticator for every non-public path and attaches the
verdict to ``request.state``. Routes enforce it through the
``get_current_client`` dependency. Admitted requests get rate-limit headers
and one usage record carrying the final response status.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from apigate.config import settings
from apigate.logging_config import bind_request_context
from apigate.models.verdict import Admitted

logger = logging.getLogger(__name__)

# Paths that do not require authentication
_PUBLIC_PATHS = {
    "/api/v1/health",
    "/api/v1/health/live",
    "/api/v1/health/ready",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/metrics",
}


def is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate X-API-Key and count the request against the client's quota."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if is_public_path(path):
            return await call_next(request)

        authenticator = request.app.state.authenticator
        raw_key = request.headers.get(settings.api_key_header)
        verdict = await authenticator.authenticate(raw_key, path, request.method)
        request.state.verdict = verdict

        if not isinstance(verdict, Admitted):
            return await call_next(request)

        client = verdict.client
        request.state.client = client
        bind_request_context(getattr(request.state, "trace_id", "unknown"), client.client_id)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(verdict.limit)
        response.headers["X-RateLimit-Remaining"] = str(verdict.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(verdict.reset_at.timestamp()))

        recorder = getattr(request.app.state, "usage_recorder", None)
        if recorder is not None:
            recorder.record(client.client_id, path, request.method, response.status_code)
        return response
