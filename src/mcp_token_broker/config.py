"""Configuration for the token broker, loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from mcp_token_broker.central_auth.errors import ConfigurationError
from mcp_token_broker.central_auth.forwarding import ForwardingMode
from mcp_token_broker.utils.environment import (
    _provider_get,
    env_bool,
    env_float,
    env_int,
    env_list,
    get_available_providers,
)

logger = logging.getLogger("mcp-token-broker.config")

DEFAULT_SCOPES: tuple[str, ...] = ("openid", "profile", "email", "mcp:tools")
_MIN_SIGNING_KEY_CHARS = 32


@dataclass(frozen=True)
class ProviderCredentials:
    """OAuth client registered with one upstream identity provider."""

    client_id: str
    client_secret: str
    tenant_id: str = "common"


@dataclass(frozen=True)
class BrokerConfig:
    """Broker configuration.

    Issuer and audience of every broker token are :attr:`issuer`, i.e.
    ``server_url`` without its trailing slash.
    """

    server_url: str
    signing_key: str
    server_name: str = "MCP Token Broker"
    upstream_token_encryption_key: str | None = None
    access_token_minutes: int = 60
    refresh_token_hours: int = 24
    include_upstream_token: bool = True
    scopes_supported: tuple[str, ...] = DEFAULT_SCOPES
    enable_dynamic_client_registration: bool = True
    client_id_metadata_document_supported: bool = True
    client_registration_hours: int = 24
    cache_dir: Path | None = None
    cache_cleanup_seconds: int = 300
    providers: dict[str, ProviderCredentials] = field(default_factory=dict)
    upstream_timeout_seconds: float = 20.0
    api_base_url: str | None = None
    api_timeout_seconds: float = 30.0
    pk_secret: str | None = None
    forwarding_mode: ForwardingMode = "broker"

    @property
    def issuer(self) -> str:
        return self.server_url.rstrip("/")

    @property
    def access_token_ttl(self) -> int:
        return self.access_token_minutes * 60

    @property
    def refresh_token_ttl(self) -> int:
        return self.refresh_token_hours * 3600

    def validate(self) -> "BrokerConfig":
        """Raise :class:`ConfigurationError` for unusable settings."""
        parsed = urlparse(self.server_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError("MCP_SERVER_URL must be an absolute http(s) URL")
        if len(self.signing_key or "") < _MIN_SIGNING_KEY_CHARS:
            raise ConfigurationError(
                f"MCP_JWT_SIGNING_KEY must be at least {_MIN_SIGNING_KEY_CHARS} characters"
            )
        for name in ("access_token_minutes", "refresh_token_hours", "client_registration_hours"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.forwarding_mode not in ("broker", "upstream"):
            raise ConfigurationError("MCP_FORWARDING_MODE must be 'broker' or 'upstream'")
        if not self.providers:
            raise ConfigurationError(
                "No upstream identity provider configured; set GOOGLE_OAUTH_CLIENT_ID/"
                "GOOGLE_OAUTH_CLIENT_SECRET or the MICROSOFT_OAUTH_* equivalents"
            )
        if self.api_base_url and not self.pk_secret:
            logger.warning(
                "DOWNSTREAM_PK_SECRET not set: user ids cannot be resolved, "
                "tokens will carry the upstream subject instead"
            )
        return self

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        """Build and validate a configuration from environment variables."""
        providers: dict[str, ProviderCredentials] = {}
        for provider, ok in get_available_providers().items():
            if not ok:
                continue
            providers[provider] = ProviderCredentials(
                client_id=_provider_get(provider, "CLIENT_ID") or "",
                client_secret=_provider_get(provider, "CLIENT_SECRET") or "",
                tenant_id=_provider_get(provider, "TENANT_ID") or "common",
            )

        cache_dir = os.getenv("MCP_CACHE_DIR")
        try:
            config = cls(
                server_url=(os.getenv("MCP_SERVER_URL") or "").strip(),
                signing_key=os.getenv("MCP_JWT_SIGNING_KEY") or "",
                server_name=os.getenv("MCP_SERVER_NAME") or "MCP Token Broker",
                upstream_token_encryption_key=os.getenv("MCP_UPSTREAM_TOKEN_ENCRYPTION_KEY")
                or None,
                access_token_minutes=env_int("MCP_ACCESS_TOKEN_MINUTES", 60),
                refresh_token_hours=env_int("MCP_REFRESH_TOKEN_HOURS", 24),
                include_upstream_token=env_bool("MCP_INCLUDE_UPSTREAM_TOKEN", True),
                scopes_supported=env_list("MCP_SCOPES_SUPPORTED", DEFAULT_SCOPES),
                enable_dynamic_client_registration=env_bool(
                    "MCP_ENABLE_DYNAMIC_CLIENT_REGISTRATION", True
                ),
                client_id_metadata_document_supported=env_bool(
                    "MCP_CLIENT_ID_METADATA_DOCUMENT_SUPPORTED", True
                ),
                client_registration_hours=env_int("MCP_CLIENT_REGISTRATION_HOURS", 24),
                cache_dir=Path(cache_dir).expanduser() if cache_dir else None,
                cache_cleanup_seconds=env_int("MCP_CACHE_CLEANUP_SECONDS", 300),
                providers=providers,
                upstream_timeout_seconds=env_float("MCP_UPSTREAM_TIMEOUT_SECONDS", 20.0),
                api_base_url=(os.getenv("DOWNSTREAM_API_BASE_URL") or "").rstrip("/") or None,
                api_timeout_seconds=env_float("DOWNSTREAM_API_TIMEOUT_SECONDS", 30.0),
                pk_secret=os.getenv("DOWNSTREAM_PK_SECRET") or None,
                forwarding_mode=(os.getenv("MCP_FORWARDING_MODE") or "broker").strip().lower(),  # type: ignore[arg-type]
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        return config.validate()
