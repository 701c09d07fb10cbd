"""OAuth client registry.

Clients come from three places:

* static registrations shipped with the broker (see :data:`STATIC_CLIENTS`),
* RFC 7591 dynamic registration, persisted in the durable cache,
* Client ID Metadata Documents, where the ``client_id`` is an HTTPS URL
  serving a JSON description of the client.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import uuid
from typing import Any, Final, Iterable, Mapping
from urllib.parse import urlparse

import requests
from cachetools import TTLCache

from mcp_token_broker.central_auth.clock import Clock, default_clock
from mcp_token_broker.central_auth.errors import ClientRegistrationError
from mcp_token_broker.central_auth.models import RegisteredClient
from mcp_token_broker.central_auth.pkce import random_urlsafe
from mcp_token_broker.central_auth.store import PersistedCache

_LOG = logging.getLogger("mcp-token-broker.central_auth.clients")

CLIENT_KEY_PREFIX: Final[str] = "oauth_client_"
METADATA_DOCUMENT_TTL_SECONDS: Final[int] = 3600
_SECRET_BYTES: Final[int] = 32
_LOOPBACK_HOSTS: Final[frozenset[str]] = frozenset({"localhost", "127.0.0.1", "[::1]", "::1"})

STATIC_CLIENTS: Final[tuple[RegisteredClient, ...]] = (
    RegisteredClient(
        client_id="claude",
        client_name="Claude",
        redirect_uris=(
            "https://claude.ai/api/mcp/auth_callback",
            "https://claude.com/api/mcp/auth_callback",
        ),
        token_endpoint_auth_method="none",
        is_public_client=True,
        created_at=0,
    ),
)


def hash_client_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def is_valid_redirect_uri(uri: str) -> bool:
    """https anywhere, http only on loopback, or a private-use scheme; no fragment."""
    if not isinstance(uri, str) or not uri.strip():
        return False
    parsed = urlparse(uri)
    if not parsed.scheme or parsed.fragment or "#" in uri:
        return False
    scheme = parsed.scheme.lower()
    if scheme == "https":
        return bool(parsed.netloc)
    if scheme == "http":
        return (parsed.hostname or "") in _LOOPBACK_HOSTS
    # private-use URI scheme for native apps (RFC 8252 §7.1)
    return scheme not in ("javascript", "data", "file")


def _str_tuple(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ClientRegistrationError(
            "invalid_client_metadata", "array fields must contain only strings"
        )
    return tuple(value) or default


class ClientRegistry:
    """Registers, looks up and authenticates OAuth clients."""

    def __init__(
        self,
        cache: PersistedCache,
        *,
        registration_ttl_seconds: int = 24 * 3600,
        metadata_documents_enabled: bool = True,
        static_clients: Iterable[RegisteredClient] = STATIC_CLIENTS,
        timeout: float | tuple[float, float] = (5, 10),
        clock: Clock = default_clock,
    ) -> None:
        self.cache = cache
        self.registration_ttl_seconds = registration_ttl_seconds
        self.metadata_documents_enabled = metadata_documents_enabled
        self.static_clients = {c.client_id: c for c in static_clients}
        self.timeout = timeout
        self._clock = clock
        self._documents: TTLCache[str, RegisteredClient] = TTLCache(
            maxsize=256, ttl=METADATA_DOCUMENT_TTL_SECONDS
        )
        self._documents_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Registration                                                       #
    # ------------------------------------------------------------------ #
    def register(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Handle an RFC 7591 registration request; return the response body.

        Raises :class:`ClientRegistrationError` for invalid metadata.
        """
        if not isinstance(request, Mapping):
            raise ClientRegistrationError("invalid_client_metadata", "body must be a JSON object")

        client_name = request.get("client_name")
        if not isinstance(client_name, str) or not client_name.strip():
            raise ClientRegistrationError("invalid_client_metadata", "client_name is required")

        redirect_uris = _str_tuple(request.get("redirect_uris"), ())
        if not redirect_uris:
            raise ClientRegistrationError("invalid_redirect_uri", "redirect_uris is required")
        for uri in redirect_uris:
            if not is_valid_redirect_uri(uri):
                raise ClientRegistrationError(
                    "invalid_redirect_uri", f"redirect_uri not allowed: {uri}"
                )

        auth_method = request.get("token_endpoint_auth_method") or "client_secret_post"
        if auth_method not in ("client_secret_post", "client_secret_basic", "none"):
            raise ClientRegistrationError(
                "invalid_client_metadata",
                f"unsupported token_endpoint_auth_method: {auth_method}",
            )
        is_public = auth_method == "none"
        scope = request.get("scope")
        if scope is not None and not isinstance(scope, str):
            raise ClientRegistrationError("invalid_client_metadata", "scope must be a string")

        now = self._clock()
        client_id = uuid.uuid4().hex
        client_secret = None if is_public else random_urlsafe(_SECRET_BYTES)
        client = RegisteredClient(
            client_id=client_id,
            client_name=client_name.strip(),
            redirect_uris=redirect_uris,
            grant_types=_str_tuple(
                request.get("grant_types"), ("authorization_code", "refresh_token")
            ),
            response_types=_str_tuple(request.get("response_types"), ("code",)),
            token_endpoint_auth_method=auth_method,
            scope=scope,
            client_secret_hash=hash_client_secret(client_secret) if client_secret else None,
            is_public_client=is_public,
            created_at=now,
            expires_at=now + self.registration_ttl_seconds,
        )
        if not self.cache.set(
            CLIENT_KEY_PREFIX + client_id, client.to_dict(), self.registration_ttl_seconds
        ):
            raise RuntimeError("client registration could not be persisted")

        _LOG.info(
            "Registered client client_id=%s name=%r public=%s",
            client_id,
            client.client_name,
            is_public,
        )
        response: dict[str, Any] = {
            "client_id": client_id,
            "client_id_issued_at": int(now),
            "client_name": client.client_name,
            "redirect_uris": list(client.redirect_uris),
            "grant_types": list(client.grant_types),
            "response_types": list(client.response_types),
            "token_endpoint_auth_method": auth_method,
        }
        if client_secret:
            response["client_secret"] = client_secret
            response["client_secret_expires_at"] = 0
        if scope:
            response["scope"] = scope
        return response

    # ------------------------------------------------------------------ #
    # Lookup & authentication                                            #
    # ------------------------------------------------------------------ #
    def get(self, client_id: str | None) -> RegisteredClient | None:
        if not client_id:
            return None
        static = self.static_clients.get(client_id)
        if static:
            return static
        if self.is_metadata_document_client(client_id):
            return self.fetch_metadata_document(client_id)

        data = self.cache.get(CLIENT_KEY_PREFIX + client_id)
        if not isinstance(data, dict):
            return None
        try:
            client = RegisteredClient.from_dict(data)
        except TypeError:
            _LOG.warning("Discarding malformed client record client_id=%s", client_id)
            return None
        if client.is_expired(clock=self._clock):
            self.cache.remove(CLIENT_KEY_PREFIX + client_id)
            return None
        return client

    def validate(
        self, client_id: str | None, client_secret: str | None = None
    ) -> RegisteredClient | None:
        """Return the client if it exists and the secret (if it has one) matches."""
        client = self.get(client_id)
        if client is None:
            return None
        if client.client_secret_hash is None:
            return client
        if not client_secret:
            return None
        presented = hash_client_secret(client_secret)
        if not hmac.compare_digest(presented, client.client_secret_hash):
            _LOG.warning("Client secret mismatch client_id=%s", client_id)
            return None
        return client

    def validate_redirect_uri(self, client_id: str | None, redirect_uri: str | None) -> bool:
        """Exact match against the registered redirect URIs."""
        if not redirect_uri:
            return False
        client = self.get(client_id)
        return client is not None and redirect_uri in client.redirect_uris

    def delete(self, client_id: str) -> bool:
        if client_id in self.static_clients:
            _LOG.warning("Refusing to delete static client client_id=%s", client_id)
            return False
        with self._documents_lock:
            self._documents.pop(client_id, None)
        key = CLIENT_KEY_PREFIX + client_id
        existed = self.cache.get(key) is not None
        self.cache.remove(key)
        return existed

    # ------------------------------------------------------------------ #
    # Client ID Metadata Documents                                       #
    # ------------------------------------------------------------------ #
    @staticmethod
    def is_metadata_document_client(client_id: str | None) -> bool:
        return bool(client_id) and client_id.lower().startswith("https://")

    def fetch_metadata_document(self, url: str) -> RegisteredClient | None:
        """Fetch, validate and cache the client described at *url*."""
        if not self.metadata_documents_enabled:
            return None
        parsed = urlparse(url)
        if parsed.scheme != "https" or not parsed.netloc:
            return None
        with self._documents_lock:
            cached = self._documents.get(url)
        if cached is not None:
            return cached

        try:
            resp = requests.get(
                url, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        except requests.RequestException as exc:
            _LOG.warning("Metadata document fetch failed url=%s: %s", url, type(exc).__name__)
            return None
        if not resp.ok:
            _LOG.warning("Metadata document fetch returned status=%s url=%s", resp.status_code, url)
            return None
        try:
            document = resp.json()
        except ValueError:
            _LOG.warning("Metadata document is not JSON url=%s", url)
            return None

        client = self._client_from_document(url, document)
        if client is None:
            return None
        with self._documents_lock:
            self._documents[url] = client
        return client

    def _client_from_document(self, url: str, document: Any) -> RegisteredClient | None:
        if not isinstance(document, dict):
            _LOG.warning("Metadata document is not an object url=%s", url)
            return None
        declared_id = document.get("client_id")
        if not isinstance(declared_id, str) or declared_id.lower() != url.lower():
            _LOG.warning("Metadata document client_id does not match its URL url=%s", url)
            return None
        try:
            redirect_uris = _str_tuple(document.get("redirect_uris"), ())
            grant_types = _str_tuple(document.get("grant_types"), ("authorization_code",))
            response_types = _str_tuple(document.get("response_types"), ("code",))
        except ClientRegistrationError:
            _LOG.warning("Metadata document has malformed array fields url=%s", url)
            return None
        if not redirect_uris or not all(is_valid_redirect_uri(u) for u in redirect_uris):
            _LOG.warning("Metadata document has no usable redirect_uris url=%s", url)
            return None

        auth_method = document.get("token_endpoint_auth_method")
        if not isinstance(auth_method, str) or not auth_method:
            auth_method = "none"
        now = self._clock()
        name = document.get("client_name")
        return RegisteredClient(
            client_id=url,
            client_name=name if isinstance(name, str) and name else urlparse(url).netloc,
            redirect_uris=redirect_uris,
            grant_types=grant_types,
            response_types=response_types,
            token_endpoint_auth_method=auth_method,
            scope=document.get("scope") if isinstance(document.get("scope"), str) else None,
            is_public_client=True,
            is_metadata_document_client=True,
            created_at=now,
            expires_at=now + METADATA_DOCUMENT_TTL_SECONDS,
        )
