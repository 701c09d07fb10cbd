"""Unit tests for UpstreamIdentityClient with requests monkeypatched."""

from __future__ import annotations

from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from mcp_token_broker.central_auth.upstream import (
    UpstreamIdentityClient,
    google_provider,
    microsoft_provider,
)

CALLBACK = "https://broker.example.com/oauth/callback/google"


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #
def _client() -> UpstreamIdentityClient:
    return UpstreamIdentityClient(
        {
            "google": google_provider("g-id", "g-secret"),
            "microsoft": microsoft_provider("m-id", "m-secret", "contoso"),
        }
    )


def _response(payload, status: int = 200):
    return SimpleNamespace(ok=200 <= status < 300, status_code=status, json=lambda: payload)


@pytest.fixture()
def http(monkeypatch):
    """Record requests.post/get calls and serve queued responses."""
    calls: dict[str, list] = {"post": [], "get": []}
    replies: dict[str, list] = {"post": [], "get": []}

    def fake_post(url, data=None, headers=None, timeout=None):
        calls["post"].append(SimpleNamespace(url=url, data=data, headers=headers, timeout=timeout))
        return replies["post"].pop(0)

    def fake_get(url, headers=None, timeout=None):
        calls["get"].append(SimpleNamespace(url=url, headers=headers, timeout=timeout))
        return replies["get"].pop(0)

    monkeypatch.setattr(requests, "post", fake_post)
    monkeypatch.setattr(requests, "get", fake_get)
    return SimpleNamespace(calls=calls, replies=replies)


# --------------------------------------------------------------------------- #
# authorization URL                                                           #
# --------------------------------------------------------------------------- #
def test_google_authorization_url() -> None:
    url = _client().build_authorization_url("google", "st", "chal", CALLBACK)
    parsed = urlparse(url)
    q = {k: v[0] for k, v in parse_qs(parsed.query).items()}

    assert parsed.netloc == "accounts.google.com"
    assert q["client_id"] == "g-id"
    assert q["response_type"] == "code"
    assert q["redirect_uri"] == CALLBACK
    assert q["state"] == "st"
    assert q["code_challenge"] == "chal"
    assert q["code_challenge_method"] == "S256"
    assert q["scope"] == "openid profile email"
    assert q["access_type"] == "offline"
    assert q["prompt"] == "consent"


def test_microsoft_authorization_url_uses_tenant() -> None:
    url = _client().build_authorization_url("microsoft", "st", "chal", CALLBACK)
    parsed = urlparse(url)
    q = parse_qs(parsed.query)
    assert parsed.netloc == "login.microsoftonline.com"
    assert parsed.path == "/contoso/oauth2/v2.0/authorize"
    assert "offline_access" in q["scope"][0].split()


def test_unsupported_provider() -> None:
    client = _client()
    assert client.supported_providers() == ["google", "microsoft"]
    assert client.is_supported("github") is False
    assert client.is_supported(None) is False
    with pytest.raises(ValueError):
        client.build_authorization_url("github", "st", "chal", CALLBACK)


# --------------------------------------------------------------------------- #
# code exchange                                                               #
# --------------------------------------------------------------------------- #
def test_exchange_code_google(http) -> None:
    http.replies["post"].append(
        _response({"access_token": "at", "refresh_token": "rt", "expires_in": 1800, "id_token": "idt"})
    )
    http.replies["get"].append(
        _response(
            {
                "sub": "g-123",
                "email": "ada@example.com",
                "email_verified": "true",
                "name": "Ada Lovelace",
                "given_name": "Ada",
                "family_name": "Lovelace",
                "picture": "https://img.example.com/a.png",
            }
        )
    )

    result = _client().exchange_code("google", "code-1", "verifier-1", CALLBACK)

    assert result is not None
    assert result.access_token == "at"
    assert result.refresh_token == "rt"
    assert result.expires_in == 1800
    info = result.user_info
    assert info.subject == "g-123"
    assert info.email == "ada@example.com"
    assert info.email_verified is True
    assert info.given_name == "Ada"

    post = http.calls["post"][0]
    assert post.url == "https://oauth2.googleapis.com/token"
    assert post.data["grant_type"] == "authorization_code"
    assert post.data["code_verifier"] == "verifier-1"
    assert post.data["redirect_uri"] == CALLBACK
    assert post.timeout is not None
    assert http.calls["get"][0].headers["Authorization"] == "Bearer at"


def test_exchange_code_microsoft_profile(http) -> None:
    http.replies["post"].append(_response({"access_token": "at"}))
    http.replies["get"].append(
        _response({"id": "m-1", "userPrincipalName": "bob@contoso.com", "displayName": "Bob", "surname": "B"})
    )
    result = _client().exchange_code("microsoft", "c", "v", CALLBACK)
    assert result.user_info.subject == "m-1"
    assert result.user_info.email == "bob@contoso.com"
    assert result.user_info.family_name == "B"
    assert http.calls["post"][0].url.endswith("/contoso/oauth2/v2.0/token")


@pytest.mark.parametrize(
    "reply",
    [
        _response({"error": "invalid_grant"}, 400),
        _response({"token_type": "Bearer"}),
        _response(["unexpected"]),
    ],
)
def test_exchange_code_failures(http, reply) -> None:
    http.replies["post"].append(reply)
    assert _client().exchange_code("google", "c", "v", CALLBACK) is None
    assert http.calls["get"] == []


def test_exchange_code_network_error(monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr(requests, "post", boom)
    assert _client().exchange_code("google", "c", "v", CALLBACK) is None


def test_exchange_code_without_profile(http) -> None:
    http.replies["post"].append(_response({"access_token": "at"}))
    http.replies["get"].append(_response({}, 401))
    result = _client().exchange_code("google", "c", "v", CALLBACK)
    assert result is not None and result.user_info is None


# --------------------------------------------------------------------------- #
# refresh                                                                     #
# --------------------------------------------------------------------------- #
def test_refresh_keeps_previous_refresh_token(http) -> None:
    http.replies["post"].append(_response({"access_token": "at2", "expires_in": "60"}))
    result = _client().refresh_upstream_token("google", "rt-old")
    assert result.access_token == "at2"
    assert result.expires_in == 60
    assert result.refresh_token == "rt-old"
    assert http.calls["post"][0].data["grant_type"] == "refresh_token"


def test_refresh_returns_new_refresh_token(http) -> None:
    http.replies["post"].append(_response({"access_token": "at2", "refresh_token": "rt-new"}))
    assert _client().refresh_upstream_token("google", "rt-old").refresh_token == "rt-new"


def test_refresh_failure(http) -> None:
    http.replies["post"].append(_response({}, 500))
    assert _client().refresh_upstream_token("google", "rt") is None
