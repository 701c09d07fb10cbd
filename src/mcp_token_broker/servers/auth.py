"""OAuth 2.1 authorization-server endpoints and discovery documents.

Handlers are intentionally thin:

1. Parse HTTP-layer parameters (query string, form, JSON, Basic auth).
2. Delegate to :class:`CentralAuthService` in a worker thread (all service
   calls do blocking file and network I/O).
3. Turn the result or an :class:`OAuthError` into a Starlette ``Response``.

SECURITY NOTE
-------------
• No raw secrets (state, code verifiers, codes, tokens, client secrets) are
  ever logged.
• Correlation IDs from ``request.state.correlation_id`` are passed through to
  the service logs.
"""

from __future__ import annotations

import base64
import binascii
import html
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from mcp_token_broker.central_auth.errors import OAuthError
from mcp_token_broker.central_auth.service import OAUTH_BASE_PATH, CentralAuthService

if TYPE_CHECKING:  # pragma: no cover
    from mcp_token_broker.servers.main import BrokerMCP  # circular – only for typing

_LOG = logging.getLogger("mcp-token-broker.auth.routes")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny success / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{html.escape(title)}</title></head><body><h1>{html.escape(title)}</h1>"
        f"<p>{html.escape(body)}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status)


def _oauth_error(exc: OAuthError) -> JSONResponse:
    headers = dict(_NO_STORE)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


def _correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)


def basic_credentials(request: Request) -> tuple[str, str] | None:
    """Decode ``Authorization: Basic`` client credentials (RFC 6749 §2.3.1)."""
    header = request.headers.get("authorization") or ""
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise OAuthError(
            "invalid_client", "Malformed Basic credentials", status_code=401
        ) from None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise OAuthError("invalid_client", "Malformed Basic credentials", status_code=401)
    return unquote(client_id), unquote(client_secret)


async def _form(request: Request) -> dict[str, str]:
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def register_oauth_routes(
    app: "BrokerMCP",
    svc: CentralAuthService,
    *,
    base_path: str = OAUTH_BASE_PATH,
) -> None:
    """Attach the OAuth endpoints to *app* under *base_path*."""

    # ----- GET /oauth/authorize ------------------------------------------- #
    @app.custom_route(f"{base_path}/authorize", methods=["GET"])
    async def _authorize(request: Request) -> Response:  # noqa: D401
        q = request.query_params
        try:
            url = await run_in_threadpool(
                svc.start_authorization,
                response_type=q.get("response_type"),
                client_id=q.get("client_id"),
                redirect_uri=q.get("redirect_uri"),
                code_challenge=q.get("code_challenge"),
                code_challenge_method=q.get("code_challenge_method"),
                state=q.get("state"),
                scope=q.get("scope"),
                provider=q.get("provider"),
                correlation_id=_correlation_id(request),
            )
        except OAuthError as exc:
            return _oauth_error(exc)
        return RedirectResponse(url, status_code=302)

    # ----- GET /oauth/callback/{provider} --------------------------------- #
    @app.custom_route(f"{base_path}/callback/{{provider}}", methods=["GET"])
    async def _callback(request: Request) -> Response:  # noqa: D401
        provider: str = request.path_params["provider"]
        q = request.query_params
        try:
            url = await run_in_threadpool(
                svc.complete_authorization,
                provider=provider,
                upstream_state=q.get("state"),
                code=q.get("code"),
                error=q.get("error"),
                correlation_id=_correlation_id(request),
            )
        except OAuthError as exc:
            _LOG.warning(
                "OAuth callback failed provider=%s error=%s correlation_id=%s",
                provider,
                exc.error,
                _correlation_id(request) or "-",
            )
            return _html_page(
                "Authorization failed", exc.description or exc.error, exc.status_code
            )
        return RedirectResponse(url, status_code=302)

    # ----- POST /oauth/token ---------------------------------------------- #
    @app.custom_route(f"{base_path}/token", methods=["POST"])
    async def _token(request: Request) -> Response:  # noqa: D401
        try:
            creds = basic_credentials(request)
            form = await _form(request)
            result = await run_in_threadpool(svc.token, form, basic_credentials=creds)
        except OAuthError as exc:
            return _oauth_error(exc)
        return JSONResponse(result.to_payload(), headers=_NO_STORE)

    # ----- POST /oauth/register ------------------------------------------- #
    @app.custom_route(f"{base_path}/register", methods=["POST"])
    async def _register(request: Request) -> Response:  # noqa: D401
        try:
            payload: Any = await request.json()
        except ValueError:
            return _oauth_error(
                OAuthError("invalid_client_metadata", "Request body must be JSON")
            )
        try:
            body = await run_in_threadpool(svc.register_client, payload)
        except OAuthError as exc:
            return _oauth_error(exc)
        except RuntimeError:
            _LOG.error("Client registration could not be persisted", exc_info=True)
            return _oauth_error(
                OAuthError("server_error", "Registration failed", status_code=500)
            )
        _LOG.info(
            "Registered client_id=%s correlation_id=%s",
            body.get("client_id"),
            _correlation_id(request) or "-",
        )
        return JSONResponse(body, status_code=201, headers=_NO_STORE)

    # ----- POST /oauth/revoke --------------------------------------------- #
    @app.custom_route(f"{base_path}/revoke", methods=["POST"])
    async def _revoke(request: Request) -> Response:  # noqa: D401
        try:
            creds = basic_credentials(request)
            form = await _form(request)
            await run_in_threadpool(svc.revoke, form, basic_credentials=creds)
        except OAuthError as exc:
            return _oauth_error(exc)
        return Response(status_code=200, headers=_NO_STORE)


def register_discovery_routes(app: "BrokerMCP", svc: CentralAuthService) -> None:
    """Attach the RFC 8414 / RFC 9728 metadata documents."""

    async def _authorization_server(request: Request) -> Response:
        return JSONResponse(svc.authorization_server_metadata())

    for path in (
        "/.well-known/oauth-authorization-server",
        "/.well-known/openid-configuration",
    ):
        app.custom_route(path, methods=["GET"])(_authorization_server)

    @app.custom_route("/.well-known/oauth-protected-resource", methods=["GET"])
    async def _protected_resource(request: Request) -> Response:
        return JSONResponse(svc.protected_resource_metadata())
