"""FastAPI exception handlers producing the standard ErrorResponse."""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apigate.errors.exceptions import (
    AuthorizationError,
    DependencyUnavailableError,
    GatewayError,
    RateLimitedError,
)
from apigate.models.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all custom exception handlers on the FastAPI app."""

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        trace_id = getattr(request.state, "trace_id", "unknown")
        if isinstance(exc, (AuthorizationError, DependencyUnavailableError)):
            client = getattr(request.state, "client", None)
            logger.warning(
                "gateway_request_rejected",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "trace_id": trace_id,
                    "client_id": client.client_id if client else None,
                    "code": exc.code,
                    "reason": str(exc),
                },
            )
        error_response = ErrorResponse(
            schema_version="1.0",
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                details=exc.details,
                trace_id=trace_id,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response.model_dump(mode="json", exclude_none=True),
            headers=headers,
        )
