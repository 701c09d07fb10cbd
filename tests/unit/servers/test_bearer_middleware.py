"""Unit tests for BearerTokenMiddleware against a bare ASGI app."""

from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse

from mcp_token_broker.central_auth.store import FilePersistedCache
from mcp_token_broker.central_auth.tokens import TokenIssuer, TokenSettings
from mcp_token_broker.servers.main import BearerTokenMiddleware

ISSUER = "https://broker.example.com"
RESOURCE_METADATA = f"{ISSUER}/.well-known/oauth-protected-resource"


async def _echo_state(scope, receive, send):
    request = Request(scope, receive)
    claims = getattr(request.state, "broker_claims", None)
    response = JSONResponse(
        {
            "sub": claims["sub"] if claims else None,
            "has_token": bool(getattr(request.state, "broker_token", None)),
        }
    )
    await response(scope, receive, send)


@pytest.fixture()
def issuer(tmp_path) -> TokenIssuer:
    return TokenIssuer(
        TokenSettings(issuer=ISSUER, signing_key="s" * 40), FilePersistedCache(tmp_path)
    )


@pytest.fixture()
async def client(issuer):
    server_ref = SimpleNamespace(
        auth_service=SimpleNamespace(tokens=issuer),
        resource_metadata_url=RESOURCE_METADATA,
    )
    app = BearerTokenMiddleware(_echo_state, mcp_server_ref=server_ref)  # type: ignore[arg-type]
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.anyio
async def test_missing_token_gets_challenge(client: httpx.AsyncClient) -> None:
    resp = await client.post("/mcp/")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == f'Bearer resource_metadata="{RESOURCE_METADATA}"'
    assert resp.json()["error"] == "unauthorized"


@pytest.mark.anyio
async def test_non_bearer_scheme_is_missing_token(client: httpx.AsyncClient) -> None:
    resp = await client.post("/mcp/", headers={"Authorization": "Basic Zm9vOmJhcg=="})
    assert resp.status_code == 401
    assert "invalid_token" not in resp.headers["www-authenticate"]


@pytest.mark.anyio
async def test_invalid_token(client: httpx.AsyncClient, tmp_path) -> None:
    other = TokenIssuer(
        TokenSettings(issuer=ISSUER, signing_key="o" * 40), FilePersistedCache(tmp_path / "o")
    )
    forged = other.mint({"sub": "mallory"}, "", issue_refresh_token=False).access_token
    resp = await client.post("/mcp/", headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == (
        f'Bearer error="invalid_token", resource_metadata="{RESOURCE_METADATA}"'
    )


@pytest.mark.anyio
async def test_valid_token_populates_state(client: httpx.AsyncClient, issuer) -> None:
    token = issuer.mint({"sub": "ada"}, "", issue_refresh_token=False).access_token
    resp = await client.post("/mcp/", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json() == {"sub": "ada", "has_token": True}


@pytest.mark.anyio
@pytest.mark.parametrize(
    "path", ["/oauth/token", "/.well-known/oauth-protected-resource", "/healthz"]
)
async def test_public_paths_pass_through(client: httpx.AsyncClient, path: str) -> None:
    resp = await client.get(path)
    assert resp.status_code == 200
    assert resp.json() == {"sub": None, "has_token": False}


@pytest.mark.anyio
async def test_preflight_passes_through(client: httpx.AsyncClient) -> None:
    resp = await client.request("OPTIONS", "/mcp/")
    assert resp.status_code == 200
