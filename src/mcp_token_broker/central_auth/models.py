"""Typed, immutable records used by the token broker core.

Persisted records round-trip through :mod:`json` via ``to_dict`` /
``from_dict``; JSON arrays come back as tuples.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping, TypeVar

from mcp_token_broker.central_auth.clock import Clock, default_clock

_R = TypeVar("_R")


def _load(cls: type[_R], data: Mapping[str, Any]) -> _R:
    """Build *cls* from a decoded JSON mapping, ignoring unknown keys."""
    kwargs: dict[str, Any] = {}
    for f in fields(cls):  # type: ignore[arg-type]
        if f.name not in data:
            continue
        value = data[f.name]
        kwargs[f.name] = tuple(value) if isinstance(value, list) else value
    return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class PkceFlowState:
    """One in-flight authorization attempt, keyed by the broker's ``state``.

    Two PKCE pairs meet here: the broker's own pair used against the upstream
    provider (``upstream_verifier`` / ``upstream_challenge``) and the challenge
    the MCP client sent (``client_code_challenge``), which is checked later
    against the client's verifier at the token endpoint.  ``client_state`` is the
    opaque value the client sent and gets back on its redirect.
    """

    state: str
    upstream_verifier: str
    upstream_challenge: str
    client_code_challenge: str
    client_id: str
    redirect_uri: str
    provider: str
    created_at: float
    expires_at: float
    scopes: tuple[str, ...] = ()
    client_state: str = ""

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return clock() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PkceFlowState":
        return _load(cls, data)


@dataclass(frozen=True, slots=True)
class RefreshTokenRecord:
    """Server-side half of an issued refresh token (stored under its hash)."""

    token_id: str
    user_id: str
    client_id: str
    upstream_access_token: str
    created_at: float
    expires_at: float
    scopes: tuple[str, ...] = ()
    upstream_refresh_token: str | None = None

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return clock() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RefreshTokenRecord":
        return _load(cls, data)


@dataclass(frozen=True, slots=True)
class RegisteredClient:
    """An OAuth client known to the broker."""

    client_id: str
    client_name: str
    redirect_uris: tuple[str, ...]
    grant_types: tuple[str, ...] = ("authorization_code", "refresh_token")
    response_types: tuple[str, ...] = ("code",)
    token_endpoint_auth_method: str = "client_secret_post"
    scope: str | None = None
    client_secret_hash: str | None = None
    is_public_client: bool = False
    is_metadata_document_client: bool = False
    created_at: float = field(default_factory=default_clock)
    expires_at: float | None = None

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return self.expires_at is not None and clock() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RegisteredClient":
        return _load(cls, data)


@dataclass(frozen=True, slots=True)
class AuthorizationCodeRecord:
    """Broker-issued authorization code awaiting redemption at /token."""

    client_id: str
    redirect_uri: str
    client_code_challenge: str
    upstream_access_token: str
    created_at: float
    expires_at: float
    claims: dict[str, str] = field(default_factory=dict)
    scopes: tuple[str, ...] = ()
    upstream_refresh_token: str | None = None

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return clock() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorizationCodeRecord":
        return _load(cls, data)


@dataclass(frozen=True, slots=True)
class UpstreamUserInfo:
    """Provider-agnostic user profile."""

    provider: str
    subject: str
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture: str | None = None
    locale: str | None = None


@dataclass(frozen=True, slots=True)
class UpstreamTokenResult:
    """Tokens returned by an upstream provider's token endpoint."""

    access_token: str
    expires_in: int = 3600
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    user_info: UpstreamUserInfo | None = None


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Access/refresh pair minted by the broker."""

    access_token: str
    expires_in: int
    scope: str
    refresh_token: str | None = None
    token_type: str = "Bearer"

    def to_payload(self) -> dict[str, Any]:
        """Return the RFC 6749 §5.1 response body."""
        payload: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        return payload
