"""FastAPI middleware: request-scoped log context."""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from featuregate.web.tenant_context import ORG_HEADER

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

logger = structlog.get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request_id (and the org header, when sent) into the log context.

    The request id is echoed back as X-Request-ID. Gate decisions logged while
    handling the request carry both fields.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        org_id = request.headers.get(ORG_HEADER)
        if org_id:
            structlog.contextvars.bind_contextvars(org_header=org_id)

        started = time.monotonic()
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        if response.status_code >= 500:
            logger.warning(
                "request_failed",
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 1),
            )
        return response
