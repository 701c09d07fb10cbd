"""Dependency providers for tools: app context and per-request API client."""

from __future__ import annotations

import logging

from fastmcp import Context
from fastmcp.server.dependencies import get_http_request
from starlette.requests import Request

from mcp_token_broker.downstream import DownstreamApiClient
from mcp_token_broker.servers.context import MainAppContext

logger = logging.getLogger("mcp-token-broker.servers.dependencies")


def get_app_context(ctx: Context) -> MainAppContext:
    """Return the :class:`MainAppContext` yielded by the server lifespan."""
    lifespan_ctx_dict = ctx.request_context.lifespan_context  # type: ignore[union-attr]
    app_context: MainAppContext | None = (
        lifespan_ctx_dict.get("app_lifespan_context")
        if isinstance(lifespan_ctx_dict, dict)
        else None
    )
    if app_context is None:
        logger.error("Application context not available in lifespan")
        raise ValueError("Application context is not available")
    return app_context


def _inbound_authorization() -> str | None:
    try:
        request: Request = get_http_request()
    except RuntimeError:
        logger.debug("No HTTP request in context (stdio transport)")
        return None
    return request.headers.get("authorization")


async def get_downstream_client(ctx: Context) -> DownstreamApiClient:
    """Build a :class:`DownstreamApiClient` carrying the caller's credential.

    Raises:
        ValueError: If no downstream API is configured.
    """
    app_context = get_app_context(ctx)
    if not app_context.api_base_url:
        raise ValueError("DOWNSTREAM_API_BASE_URL is not configured")
    auth = app_context.forwarder.auth_for(_inbound_authorization())
    return DownstreamApiClient(
        app_context.api_base_url,
        auth=auth,
        timeout=app_context.api_timeout_seconds,
    )
