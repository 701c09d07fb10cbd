"""Main FastMCP server setup for the token broker."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from mcp_token_broker.central_auth.errors import ConfigurationError
from mcp_token_broker.central_auth.forwarding import CredentialForwarder, bearer_from_header
from mcp_token_broker.central_auth.service import OAUTH_BASE_PATH, CentralAuthService
from mcp_token_broker.central_auth.store import FilePersistedCache
from mcp_token_broker.config import BrokerConfig
from mcp_token_broker.utils.logging import mask_sensitive, setup_logging

from .auth import register_discovery_routes, register_oauth_routes
from .context import MainAppContext
from .correlation import CorrelationIdMiddleware
from .users import users_mcp

logger = logging.getLogger("mcp-token-broker.server.main")

# Reachable without a broker access token.
PUBLIC_PATH_PREFIXES: tuple[str, ...] = (f"{OAUTH_BASE_PATH}/", "/.well-known/", "/healthz")


async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


@asynccontextmanager
async def main_lifespan(app: FastMCP[MainAppContext]) -> AsyncIterator[dict]:
    logger.info("Token broker lifespan starting...")
    server: BrokerMCP = app  # type: ignore[assignment]
    config = server.broker_config
    cache = server.auth_service.cache
    if isinstance(cache, FilePersistedCache):
        cache.start()

    app_context = MainAppContext(
        config=config,
        forwarder=server.forwarder,
        api_base_url=config.api_base_url,
        api_timeout_seconds=config.api_timeout_seconds,
    )
    logger.info(
        "Issuer=%s providers=%s forwarding_mode=%s",
        config.issuer,
        ",".join(server.auth_service.upstream.supported_providers()),
        config.forwarding_mode,
    )
    try:
        yield {"app_lifespan_context": app_context}
    except Exception as e:
        logger.error(f"Error during lifespan: {e}", exc_info=True)
        raise
    finally:
        if isinstance(cache, FilePersistedCache):
            cache.close()
        logger.info("Token broker lifespan shutdown complete.")


class BrokerMCP(FastMCP[MainAppContext]):
    """FastMCP server that is also the OAuth 2.1 authorization server for its tools."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        auth_service: CentralAuthService | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("lifespan", main_lifespan)
        super().__init__(name=config.server_name, **kwargs)
        self.broker_config = config
        self.auth_service = auth_service or CentralAuthService.from_config(config)
        self.forwarder = CredentialForwarder(self.auth_service.tokens, config.forwarding_mode)

        register_oauth_routes(self, self.auth_service)
        register_discovery_routes(self, self.auth_service)
        self.custom_route("/healthz", methods=["GET"], include_in_schema=False)(health_check)
        self.mount(users_mcp, prefix="users")

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.broker_config.issuer}/.well-known/oauth-protected-resource"

    def http_app(
        self,
        path: str | None = None,
        middleware: list[Middleware] | None = None,
        transport: Literal["streamable-http", "sse"] = "streamable-http",
        **kwargs: Any,
    ) -> "Starlette":
        final_middleware_list = [
            Middleware(CorrelationIdMiddleware),
            Middleware(BearerTokenMiddleware, mcp_server_ref=self),
        ]
        if middleware:
            final_middleware_list.extend(middleware)
        return super().http_app(
            path=path, middleware=final_middleware_list, transport=transport, **kwargs
        )


class BearerTokenMiddleware:
    """ASGI middleware that admits only requests with a valid broker access token.

    OAuth, discovery and health endpoints stay public.  On success the decoded
    claims and the raw token are stored in ``request.state`` as
    ``broker_claims`` / ``broker_token``.
    """

    def __init__(self, app: ASGIApp, mcp_server_ref: Optional["BrokerMCP"] = None) -> None:
        self.app = app
        self.mcp_server_ref = mcp_server_ref
        if not self.mcp_server_ref:
            logger.warning(
                "BearerTokenMiddleware initialized without mcp_server_ref; "
                "all requests will pass through unauthenticated."
            )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._requires_auth(scope):
            await self.app(scope, receive, send)
            return

        scope_copy: Scope = dict(scope)
        scope_copy["state"] = dict(scope.get("state") or {})

        headers = dict(scope.get("headers", []))
        raw = headers.get(b"authorization")
        token = bearer_from_header(raw.decode("latin-1") if raw else None)
        if token is None:
            await self._send_unauthorized(send, None, "Bearer token required")
            return

        assert self.mcp_server_ref is not None
        claims = self.mcp_server_ref.auth_service.tokens.validate(token)
        if claims is None:
            logger.info("Rejected bearer token (masked): %s", mask_sensitive(token, 6))
            await self._send_unauthorized(
                send, "invalid_token", "Access token is invalid or expired"
            )
            return

        scope_copy["state"]["broker_claims"] = claims
        scope_copy["state"]["broker_token"] = token
        logger.debug(
            "BearerTokenMiddleware: authenticated sub=%s", mask_sensitive(claims.get("sub"), 4)
        )

        async def safe_send(message: Message) -> None:
            try:
                await send(message)
            except (ConnectionResetError, BrokenPipeError) as e:
                logger.debug(f"Client disconnected during response: {type(e).__name__}: {e}")

        await self.app(scope_copy, receive, safe_send)

    def _requires_auth(self, scope: Scope) -> bool:
        if not self.mcp_server_ref or scope.get("method") == "OPTIONS":
            return False
        path = scope.get("path", "")
        return not path.startswith(PUBLIC_PATH_PREFIXES)

    async def _send_unauthorized(self, send: Send, error: str | None, description: str) -> None:
        assert self.mcp_server_ref is not None
        body = json.dumps(
            {"error": error or "unauthorized", "error_description": description}
        ).encode("utf-8")
        challenge = f'Bearer resource_metadata="{self.mcp_server_ref.resource_metadata_url}"'
        if error:
            challenge = f'Bearer error="{error}", ' + challenge[len("Bearer ") :]
        await send(
            {
                "type": "http.response.start",
                "status": 401,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode("ascii")),
                    (b"www-authenticate", challenge.encode("latin-1")),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})


def create_server(
    config: BrokerConfig | None = None,
    *,
    auth_service: CentralAuthService | None = None,
) -> BrokerMCP:
    """Build a :class:`BrokerMCP`, reading configuration from the environment if needed."""
    config = config or BrokerConfig.from_env()
    return BrokerMCP(config, auth_service=auth_service)


def main(argv: list[str] | None = None) -> None:
    """Console entry point ``mcp-token-broker``."""
    parser = argparse.ArgumentParser(description="OAuth 2.1 token broker for MCP clients")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: %(default)s)")
    parser.add_argument(
        "--transport",
        choices=("streamable-http", "sse"),
        default="streamable-http",
        help="MCP HTTP transport (default: %(default)s)",
    )
    parser.add_argument("--log-level", default=None, help="Overrides MCP_LOG_LEVEL")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    try:
        server = create_server()
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from None

    logger.info("Starting %s on %s:%s (%s)", server.name, args.host, args.port, args.transport)
    server.run(transport=args.transport, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
