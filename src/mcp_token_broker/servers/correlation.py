"""Correlation ID middleware for request tracing.

Reuses the caller's ``X-Correlation-ID`` or generates a UUID4 hex one, stores
it in ``request.state.correlation_id`` for handlers and services and echoes it
in the response headers.
"""

from __future__ import annotations

import logging
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

_HEADER_NAME = "X-Correlation-ID"
_MAX_LENGTH = 128
_logger = logging.getLogger("mcp-token-broker.correlation")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that attaches a per-request correlation ID."""

    def __init__(self, app: ASGIApp, header_name: str = _HEADER_NAME) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = (request.headers.get(self.header_name) or "").strip()
        if incoming and incoming.isprintable():
            correlation_id = incoming[:_MAX_LENGTH]
        else:
            correlation_id = uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        _logger.debug(
            "%s %s", request.method, request.url.path, extra={"correlation_id": correlation_id}
        )
        response = await call_next(request)
        response.headers[self.header_name] = correlation_id
        return response
