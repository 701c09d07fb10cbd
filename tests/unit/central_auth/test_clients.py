"""Unit tests for ClientRegistry."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
import requests

from mcp_token_broker.central_auth import clients as clients_mod
from mcp_token_broker.central_auth.clients import (
    ClientRegistry,
    is_valid_redirect_uri,
)
from mcp_token_broker.central_auth.errors import ClientRegistrationError
from mcp_token_broker.central_auth.store import FilePersistedCache

CIMD_URL = "https://app.example.com/oauth/client.json"


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #
def _registry(tmp_path: Path, clock, **kwargs) -> ClientRegistry:
    cache = FilePersistedCache(base_dir=tmp_path, clock=clock)
    return ClientRegistry(cache, registration_ttl_seconds=3600, clock=clock, **kwargs)


def _fake_get(document, status: int = 200, calls: list | None = None):
    def fake(url, headers=None, timeout=None):
        if calls is not None:
            calls.append(url)

        def _json():
            if isinstance(document, Exception):
                raise document
            return document

        return SimpleNamespace(ok=200 <= status < 300, status_code=status, json=_json)

    return fake


# --------------------------------------------------------------------------- #
# redirect URI rules                                                          #
# --------------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "uri,ok",
    [
        ("https://app.example.com/cb", True),
        ("http://localhost:3000/cb", True),
        ("http://127.0.0.1/cb", True),
        ("com.example.app:/oauth2redirect", True),
        ("http://app.example.com/cb", False),
        ("https://app.example.com/cb#frag", False),
        ("javascript:alert(1)", False),
        ("not a uri", False),
        ("", False),
    ],
)
def test_is_valid_redirect_uri(uri: str, ok: bool) -> None:
    assert is_valid_redirect_uri(uri) is ok


# --------------------------------------------------------------------------- #
# registration                                                                #
# --------------------------------------------------------------------------- #
def test_register_confidential_client(tmp_path: Path, fake_clock) -> None:
    registry = _registry(tmp_path, fake_clock)
    resp = registry.register(
        {"client_name": "Cursor", "redirect_uris": ["https://app.example.com/cb"]}
    )

    assert resp["client_secret"]
    assert resp["client_secret_expires_at"] == 0
    assert resp["token_endpoint_auth_method"] == "client_secret_post"
    assert resp["grant_types"] == ["authorization_code", "refresh_token"]
    assert resp["response_types"] == ["code"]

    client = registry.validate(resp["client_id"], resp["client_secret"])
    assert client is not None and client.client_name == "Cursor"
    assert registry.validate(resp["client_id"], "wrong") is None
    assert registry.validate(resp["client_id"], None) is None
    # only the hash is persisted
    assert resp["client_secret"] not in "".join(p.read_text() for p in tmp_path.glob("*.json"))


def test_register_public_client(tmp_path: Path, fake_clock) -> None:
    registry = _registry(tmp_path, fake_clock)
    resp = registry.register(
        {
            "client_name": "CLI",
            "redirect_uris": ["http://localhost:8765/cb"],
            "token_endpoint_auth_method": "none",
        }
    )
    assert "client_secret" not in resp
    client = registry.validate(resp["client_id"])
    assert client is not None and client.is_public_client


@pytest.mark.parametrize(
    "request_body,error",
    [
        ({"redirect_uris": ["https://a.example.com/cb"]}, "invalid_client_metadata"),
        ({"client_name": "x"}, "invalid_redirect_uri"),
        ({"client_name": "x", "redirect_uris": ["http://evil.example.com/cb"]}, "invalid_redirect_uri"),
        (
            {
                "client_name": "x",
                "redirect_uris": ["https://a.example.com/cb"],
                "token_endpoint_auth_method": "private_key_jwt",
            },
            "invalid_client_metadata",
        ),
        ({"client_name": "x", "redirect_uris": "https://a.example.com/cb"}, "invalid_client_metadata"),
        ([], "invalid_client_metadata"),
    ],
)
def test_register_rejects_bad_metadata(tmp_path: Path, fake_clock, request_body, error) -> None:
    registry = _registry(tmp_path, fake_clock)
    with pytest.raises(ClientRegistrationError) as exc_info:
        registry.register(request_body)
    assert exc_info.value.error == error


def test_registration_expires(tmp_path: Path, fake_clock) -> None:
    registry = _registry(tmp_path, fake_clock)
    resp = registry.register(
        {"client_name": "x", "redirect_uris": ["https://a.example.com/cb"]}
    )
    fake_clock.advance(3601)
    assert registry.get(resp["client_id"]) is None


def test_redirect_uri_exact_match(tmp_path: Path, fake_clock) -> None:
    registry = _registry(tmp_path, fake_clock)
    resp = registry.register(
        {"client_name": "x", "redirect_uris": ["https://a.example.com/cb"]}
    )
    cid = resp["client_id"]
    assert registry.validate_redirect_uri(cid, "https://a.example.com/cb") is True
    assert registry.validate_redirect_uri(cid, "https://a.example.com/cb/extra") is False
    assert registry.validate_redirect_uri(cid, "https://a.example.com/") is False
    assert registry.validate_redirect_uri(cid, None) is False
    assert registry.validate_redirect_uri("unknown", "https://a.example.com/cb") is False


def test_delete(tmp_path: Path, fake_clock) -> None:
    registry = _registry(tmp_path, fake_clock)
    resp = registry.register(
        {"client_name": "x", "redirect_uris": ["https://a.example.com/cb"]}
    )
    assert registry.delete(resp["client_id"]) is True
    assert registry.get(resp["client_id"]) is None
    assert registry.delete(resp["client_id"]) is False


def test_static_claude_client(tmp_path: Path, fake_clock) -> None:
    registry = _registry(tmp_path, fake_clock)
    client = registry.validate("claude")
    assert client is not None and client.is_public_client
    assert registry.validate_redirect_uri("claude", "https://claude.ai/api/mcp/auth_callback")
    assert registry.delete("claude") is False
    assert registry.get("claude") is not None


# --------------------------------------------------------------------------- #
# Client ID Metadata Documents                                                #
# --------------------------------------------------------------------------- #
def test_metadata_document_client(tmp_path: Path, fake_clock, monkeypatch) -> None:
    calls: list[str] = []
    document = {
        "client_id": CIMD_URL,
        "client_name": "Example App",
        "redirect_uris": ["https://app.example.com/cb"],
    }
    monkeypatch.setattr(clients_mod.requests, "get", _fake_get(document, calls=calls))
    registry = _registry(tmp_path, fake_clock)

    assert ClientRegistry.is_metadata_document_client(CIMD_URL)
    assert not ClientRegistry.is_metadata_document_client("abc")

    client = registry.get(CIMD_URL)
    assert client is not None
    assert client.is_metadata_document_client and client.is_public_client
    assert client.client_name == "Example App"
    assert client.grant_types == ("authorization_code",)
    assert registry.validate_redirect_uri(CIMD_URL, "https://app.example.com/cb")

    registry.get(CIMD_URL)
    assert calls == [CIMD_URL]  # cached


def test_metadata_document_declared_grants_are_kept(tmp_path: Path, fake_clock, monkeypatch) -> None:
    document = {
        "client_id": CIMD_URL,
        "redirect_uris": ["https://app.example.com/cb"],
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
    }
    monkeypatch.setattr(clients_mod.requests, "get", _fake_get(document))
    registry = _registry(tmp_path, fake_clock)

    client = registry.get(CIMD_URL)
    assert client is not None
    assert client.grant_types == ("authorization_code",)
    assert client.response_types == ("code",)
    assert client.token_endpoint_auth_method == "none"


def test_metadata_document_client_id_match_ignores_case(tmp_path: Path, fake_clock, monkeypatch) -> None:
    document = {
        "client_id": "https://APP.Example.com/oauth/client.json",
        "redirect_uris": ["https://app.example.com/cb"],
    }
    monkeypatch.setattr(clients_mod.requests, "get", _fake_get(document))
    registry = _registry(tmp_path, fake_clock)

    client = registry.get(CIMD_URL)
    assert client is not None
    assert client.client_id == CIMD_URL


@pytest.mark.parametrize(
    "document,status",
    [
        ({"client_id": "https://other.example.com/c.json", "redirect_uris": ["https://a.example.com/cb"]}, 200),
        ({"client_id": CIMD_URL, "redirect_uris": []}, 200),
        ({"client_id": CIMD_URL, "redirect_uris": ["http://evil.example.com/cb"]}, 200),
        (["not", "an", "object"], 200),
        (ValueError("no json"), 200),
        ({"client_id": CIMD_URL, "redirect_uris": ["https://a.example.com/cb"]}, 404),
    ],
)
def test_metadata_document_rejected(tmp_path: Path, fake_clock, monkeypatch, document, status) -> None:
    monkeypatch.setattr(clients_mod.requests, "get", _fake_get(document, status))
    registry = _registry(tmp_path, fake_clock)
    assert registry.get(CIMD_URL) is None


def test_metadata_document_network_error(tmp_path: Path, fake_clock, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(clients_mod.requests, "get", boom)
    assert _registry(tmp_path, fake_clock).get(CIMD_URL) is None


def test_metadata_documents_disabled(tmp_path: Path, fake_clock, monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(clients_mod.requests, "get", _fake_get({}, calls=calls))
    registry = _registry(tmp_path, fake_clock, metadata_documents_enabled=False)
    assert registry.get(CIMD_URL) is None
    assert calls == []
