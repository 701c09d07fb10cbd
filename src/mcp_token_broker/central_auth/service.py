"""CentralAuthService – the broker's OAuth 2.1 authorization server logic.

Handlers in ``mcp_token_broker.servers.auth`` call the façade methods below;
they stay free of protocol rules.  One logical flow spans four requests that
may land on different processes, so every hand-off goes through the durable
cache:

1. ``start_authorization``   client → broker → upstream provider
2. ``complete_authorization`` upstream provider → broker → client (with code)
3. ``exchange_authorization_code`` client redeems code (+ PKCE verifier)
4. ``refresh`` client rotates its refresh token

Flow failures raise :class:`OAuthError`; nothing else escapes.  Secrets are
never logged.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Final, Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

from mcp_token_broker.central_auth.clients import ClientRegistry
from mcp_token_broker.central_auth.clock import Clock, default_clock
from mcp_token_broker.central_auth.errors import ClientRegistrationError, OAuthError
from mcp_token_broker.central_auth.log_utils import get_auth_logger
from mcp_token_broker.central_auth.models import (
    AuthorizationCodeRecord,
    PkceFlowState,
    RegisteredClient,
    TokenResponse,
)
from mcp_token_broker.central_auth.pkce import PkceManager
from mcp_token_broker.central_auth.resolver import IdentityResolver
from mcp_token_broker.central_auth.store import FilePersistedCache, PersistedCache
from mcp_token_broker.central_auth.tokens import TokenIssuer, TokenSettings
from mcp_token_broker.central_auth.upstream import (
    ProviderConfig,
    UpstreamIdentityClient,
    google_provider,
    microsoft_provider,
)
from mcp_token_broker.config import BrokerConfig
from mcp_token_broker.utils.logging import mask_sensitive

_LOG = logging.getLogger("mcp-token-broker.central_auth.service")

AUTH_CODE_PREFIX: Final[str] = "oauth_auth_code_"
AUTH_CODE_TTL_SECONDS: Final[int] = 300

OAUTH_BASE_PATH: Final[str] = "/oauth"
GRANT_TYPES: Final[tuple[str, ...]] = ("authorization_code", "refresh_token")
PROTECTED_RESOURCE_SCOPES: Final[tuple[str, ...]] = (
    "mcp:tools",
    "mcp:read",
    "mcp:write",
    "openid",
    "profile",
    "email",
)

_INVALID_GRANT = "Authorization grant is invalid, expired or revoked"


def _append_query(url: str, params: Mapping[str, str]) -> str:
    parts = urlsplit(url)
    extra = urlencode({k: v for k, v in params.items() if v})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def build_providers(config: BrokerConfig) -> dict[str, ProviderConfig]:
    """Translate configured credentials into the provider table."""
    providers: dict[str, ProviderConfig] = {}
    google = config.providers.get("google")
    if google:
        providers["google"] = google_provider(google.client_id, google.client_secret)
    microsoft = config.providers.get("microsoft")
    if microsoft:
        providers["microsoft"] = microsoft_provider(
            microsoft.client_id, microsoft.client_secret, microsoft.tenant_id
        )
    return providers


class CentralAuthService:
    """Application service orchestrating the broker's OAuth flows."""

    def __init__(
        self,
        *,
        config: BrokerConfig,
        cache: PersistedCache,
        pkce: PkceManager,
        upstream: UpstreamIdentityClient,
        clients: ClientRegistry,
        tokens: TokenIssuer,
        resolver: IdentityResolver | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.config = config
        self.cache = cache
        self.pkce = pkce
        self.upstream = upstream
        self.clients = clients
        self.tokens = tokens
        self.resolver = resolver
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: BrokerConfig,
        *,
        cache: PersistedCache | None = None,
        clock: Clock = default_clock,
    ) -> "CentralAuthService":
        """Wire every component from *config*."""
        cache = cache or FilePersistedCache(
            config.cache_dir,
            clock=clock,
            cleanup_interval=config.cache_cleanup_seconds,
        )
        tokens = TokenIssuer(
            TokenSettings(
                issuer=config.issuer,
                signing_key=config.signing_key,
                encryption_key=config.upstream_token_encryption_key,
                access_token_ttl=config.access_token_ttl,
                refresh_token_ttl=config.refresh_token_ttl,
                include_upstream_token=config.include_upstream_token,
            ),
            cache,
            clock=clock,
        )
        resolver = None
        if config.api_base_url and config.pk_secret:
            resolver = IdentityResolver(
                tokens,
                api_base_url=config.api_base_url,
                pk_secret=config.pk_secret,
                timeout=config.api_timeout_seconds,
            )
        return cls(
            config=config,
            cache=cache,
            pkce=PkceManager(cache, clock=clock),
            upstream=UpstreamIdentityClient(
                build_providers(config), timeout=config.upstream_timeout_seconds
            ),
            clients=ClientRegistry(
                cache,
                registration_ttl_seconds=config.client_registration_hours * 3600,
                metadata_documents_enabled=config.client_id_metadata_document_supported,
                clock=clock,
            ),
            tokens=tokens,
            resolver=resolver,
            clock=clock,
        )

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    @property
    def issuer(self) -> str:
        return self.config.issuer

    def endpoint(self, path: str) -> str:
        return f"{self.issuer}{path}"

    def callback_url(self, provider: str) -> str:
        return self.endpoint(f"{OAUTH_BASE_PATH}/callback/{provider}")

    def default_provider(self) -> str | None:
        supported = self.upstream.supported_providers()
        if "google" in supported:
            return "google"
        return supported[0] if supported else None

    # ------------------------------------------------------------------ #
    # 1. Authorization request                                           #
    # ------------------------------------------------------------------ #
    def start_authorization(
        self,
        *,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None,
        state: str | None,
        scope: str | None = None,
        provider: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Validate the client's request, persist the flow, return the upstream URL."""
        log = get_auth_logger(
            base_logger_name=_LOG.name,
            client_id=client_id,
            provider=provider,
            correlation_id=correlation_id,
        )
        if response_type != "code":
            raise OAuthError("unsupported_response_type", "Only response_type=code is supported")
        if not client_id or not redirect_uri:
            raise OAuthError("invalid_request", "client_id and redirect_uri are required")
        if not state:
            raise OAuthError("invalid_request", "state is required")
        if not code_challenge or code_challenge_method != "S256":
            raise OAuthError("invalid_request", "PKCE with code_challenge_method=S256 is required")

        client = self.clients.get(client_id)
        if client is None:
            raise OAuthError("invalid_client", "Unknown client")
        if not self.clients.validate_redirect_uri(client_id, redirect_uri):
            raise OAuthError("invalid_request", "redirect_uri is not registered for this client")

        provider = provider or self.default_provider()
        if not provider or not self.upstream.is_supported(provider):
            raise OAuthError("invalid_request", "Unsupported identity provider")

        scopes = scope.split() if scope else list(self.config.scopes_supported)
        upstream_state = self.pkce.generate_state()
        verifier, challenge = self.pkce.generate_challenge_pair()
        flow = self.pkce.store_flow(
            upstream_state,
            upstream_verifier=verifier,
            upstream_challenge=challenge,
            client_code_challenge=code_challenge,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            provider=provider,
            client_state=state,
        )
        if flow is None:
            log.error("Authorization flow could not be stored")
            raise OAuthError(
                "server_error", "Authorization could not be started", status_code=500
            )
        url = self.upstream.build_authorization_url(
            provider, upstream_state, challenge, self.callback_url(provider)
        )
        log.info(
            "Authorization started provider=%s flow=%s**** scopes=%s",
            provider,
            upstream_state[:6],
            " ".join(scopes),
        )
        return url

    # ------------------------------------------------------------------ #
    # 2. Upstream callback                                               #
    # ------------------------------------------------------------------ #
    def complete_authorization(
        self,
        *,
        provider: str,
        upstream_state: str | None,
        code: str | None,
        error: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Finish the upstream leg and return the client redirect URL.

        Raises :class:`OAuthError` when there is no trustworthy client redirect
        (unknown or replayed state) and when the provider exchange fails.
        """
        flow = self.pkce.consume_flow(upstream_state)
        if flow is None:
            raise OAuthError("invalid_request", "Unknown or expired authorization state")
        log = get_auth_logger(
            base_logger_name=_LOG.name,
            client_id=flow.client_id,
            provider=provider,
            flow=upstream_state,
            correlation_id=correlation_id,
        )
        if flow.provider != provider:
            log.warning("Callback provider does not match the stored flow")
            raise OAuthError("invalid_request", "Unknown or expired authorization state")

        if error:
            log.info("Upstream provider denied authorization: %s", error)
            return self._client_redirect(
                flow, error="access_denied", error_description="The user denied the request"
            )
        if not code:
            return self._client_redirect(
                flow, error="invalid_request", error_description="Missing authorization code"
            )

        result = self.upstream.exchange_code(
            provider, code, flow.upstream_verifier, self.callback_url(provider)
        )
        if result is None or result.user_info is None or not result.user_info.subject:
            log.warning("Upstream code exchange failed")
            raise OAuthError(
                "temporarily_unavailable",
                "The identity provider could not complete sign-in",
                status_code=502,
            )

        info = result.user_info
        claims = {
            "sub": info.subject,
            "email": info.email,
            "name": info.name,
            "given_name": info.given_name,
            "family_name": info.family_name,
            "picture": info.picture,
            "provider": provider,
        }
        claims = {k: v for k, v in claims.items() if v}

        if self.resolver is not None and info.email:
            user_id = self.resolver.resolve(info.email, result.access_token, claims)
            if user_id is not None:
                claims["sub"] = str(user_id)
            else:
                log.warning("User id resolution failed; keeping upstream subject")

        code_value = uuid.uuid4().hex
        now = self._clock()
        record = AuthorizationCodeRecord(
            client_id=flow.client_id,
            redirect_uri=flow.redirect_uri,
            client_code_challenge=flow.client_code_challenge,
            upstream_access_token=result.access_token,
            upstream_refresh_token=result.refresh_token,
            claims=claims,
            scopes=flow.scopes,
            created_at=now,
            expires_at=now + AUTH_CODE_TTL_SECONDS,
        )
        if not self.cache.set(AUTH_CODE_PREFIX + code_value, record.to_dict(), AUTH_CODE_TTL_SECONDS):
            return self._client_redirect(
                flow, error="server_error", error_description="Authorization could not be stored"
            )

        log.info("Authorization code issued sub=%s", mask_sensitive(claims["sub"], 4))
        return self._client_redirect(flow, code=code_value)

    @staticmethod
    def _client_redirect(flow: PkceFlowState, **params: str) -> str:
        return _append_query(flow.redirect_uri, {**params, "state": flow.client_state})

    # ------------------------------------------------------------------ #
    # 3./4. Token endpoint                                               #
    # ------------------------------------------------------------------ #
    def authenticate_client(
        self, client_id: str | None, client_secret: str | None
    ) -> RegisteredClient:
        client = self.clients.validate(client_id, client_secret)
        if client is None:
            raise OAuthError("invalid_client", "Client authentication failed", status_code=401)
        return client

    def token(
        self,
        form: Mapping[str, str],
        *,
        basic_credentials: tuple[str, str] | None = None,
    ) -> TokenResponse:
        """Dispatch a token request on ``grant_type``."""
        grant_type = form.get("grant_type")
        if grant_type not in GRANT_TYPES:
            raise OAuthError("unsupported_grant_type", "Unsupported grant_type")

        client_id, client_secret = basic_credentials or (
            form.get("client_id"),
            form.get("client_secret"),
        )
        client = self.authenticate_client(client_id, client_secret)
        if grant_type not in client.grant_types:
            raise OAuthError("unauthorized_client", "Grant type not allowed for this client")

        if grant_type == "authorization_code":
            return self.exchange_authorization_code(
                client,
                code=form.get("code"),
                redirect_uri=form.get("redirect_uri"),
                code_verifier=form.get("code_verifier"),
            )
        return self.refresh(client, refresh_token=form.get("refresh_token"))

    def exchange_authorization_code(
        self,
        client: RegisteredClient,
        *,
        code: str | None,
        redirect_uri: str | None,
        code_verifier: str | None,
    ) -> TokenResponse:
        if not code or not redirect_uri or not code_verifier:
            raise OAuthError("invalid_request", "code, redirect_uri and code_verifier are required")

        # single use: the code is gone even if a check below fails
        data = self.cache.take(AUTH_CODE_PREFIX + code)
        record = AuthorizationCodeRecord.from_dict(data) if isinstance(data, dict) else None
        if (
            record is None
            or record.is_expired(clock=self._clock)
            or record.client_id != client.client_id
            or record.redirect_uri != redirect_uri
            or not self.pkce.validate_verifier(code_verifier, record.client_code_challenge)
        ):
            _LOG.info("Rejected authorization code for client_id=%s", client.client_id)
            raise OAuthError("invalid_grant", _INVALID_GRANT)

        return self.tokens.mint(
            record.claims,
            record.upstream_access_token,
            record.upstream_refresh_token,
            record.scopes,
            client.client_id,
        )

    def refresh(self, client: RegisteredClient, *, refresh_token: str | None) -> TokenResponse:
        if not refresh_token:
            raise OAuthError("invalid_request", "refresh_token is required")
        response = self.tokens.refresh(refresh_token, client.client_id)
        if response is None:
            raise OAuthError("invalid_grant", _INVALID_GRANT)
        return response

    def revoke(
        self,
        form: Mapping[str, str],
        *,
        basic_credentials: tuple[str, str] | None = None,
    ) -> None:
        """RFC 7009 revocation; unknown tokens are not an error."""
        client_id, client_secret = basic_credentials or (
            form.get("client_id"),
            form.get("client_secret"),
        )
        client = self.authenticate_client(client_id, client_secret)
        token = form.get("token")
        if not token:
            raise OAuthError("invalid_request", "token is required")
        if form.get("token_type_hint") == "access_token":
            return  # access tokens are self-contained and simply expire
        if self.tokens.revoke(token, client_id=client.client_id):
            _LOG.info("Revoked refresh token for client_id=%s", client.client_id)

    # ------------------------------------------------------------------ #
    # Dynamic client registration                                        #
    # ------------------------------------------------------------------ #
    def register_client(self, payload: Any) -> dict[str, Any]:
        if not self.config.enable_dynamic_client_registration:
            raise OAuthError(
                "registration_not_supported", "Dynamic client registration is disabled"
            )
        try:
            return self.clients.register(payload)
        except ClientRegistrationError as exc:
            raise OAuthError(exc.error, exc.description) from None

    # ------------------------------------------------------------------ #
    # Discovery documents                                                #
    # ------------------------------------------------------------------ #
    def authorization_server_metadata(self) -> dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        metadata: dict[str, Any] = {
            "issuer": self.issuer,
            "authorization_endpoint": self.endpoint(f"{OAUTH_BASE_PATH}/authorize"),
            "token_endpoint": self.endpoint(f"{OAUTH_BASE_PATH}/token"),
            "revocation_endpoint": self.endpoint(f"{OAUTH_BASE_PATH}/revoke"),
            "scopes_supported": list(self.config.scopes_supported),
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": list(GRANT_TYPES),
            "token_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic",
                "none",
            ],
            "revocation_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic",
                "none",
            ],
            "code_challenge_methods_supported": ["S256"],
            "client_id_metadata_document_supported": (
                self.config.client_id_metadata_document_supported
            ),
            "subject_types_supported": ["public"],
        }
        if self.config.enable_dynamic_client_registration:
            metadata["registration_endpoint"] = self.endpoint(f"{OAUTH_BASE_PATH}/register")
        return metadata

    def protected_resource_metadata(self) -> dict[str, Any]:
        """RFC 9728 protected resource metadata for the MCP endpoint."""
        return {
            "resource": self.issuer,
            "authorization_servers": [self.issuer],
            "scopes_supported": list(PROTECTED_RESOURCE_SCOPES),
            "bearer_methods_supported": ["header"],
            "resource_name": self.config.server_name,
        }
