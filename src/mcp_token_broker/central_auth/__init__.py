"""Central authentication core package.

This namespace hosts the **HTTP-agnostic** building blocks of the broker's
OAuth 2.1 authorization server.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
store
    Durable keyed store with TTL (one JSON file per key).
pkce
    Proof-Key for Code Exchange helpers and per-flow state.
upstream
    Google / Microsoft authorization-code client.
clients
    OAuth client registry (static, dynamic and metadata-document clients).
tokens
    Broker access/refresh token issuing, rotation and revocation.
cipher
    AES helpers for the embedded upstream token and downstream ids.
resolver
    Maps an upstream identity to the downstream numeric user id.
forwarding
    Outbound credential selection for downstream API calls.
service
    Orchestrates the authorize → callback → token → refresh flow.
models
    Immutable dataclasses for persisted records.
errors
    Exception types used by the central auth logic.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

All public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .pkce import PkceManager, code_challenge_s256, generate_code_verifier  # noqa: F401
from .models import (  # noqa: F401
    PkceFlowState,
    RefreshTokenRecord,
    RegisteredClient,
    TokenResponse,
)
from .errors import ClientRegistrationError, ConfigurationError, OAuthError  # noqa: F401
from .log_utils import get_auth_logger  # noqa: F401
from .store import FilePersistedCache, PersistedCache  # noqa: F401
from .tokens import TokenIssuer, TokenSettings  # noqa: F401
from .clients import ClientRegistry  # noqa: F401
from .upstream import UpstreamIdentityClient  # noqa: F401
from .resolver import IdentityResolver  # noqa: F401
from .forwarding import CredentialForwarder  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # pkce
    "PkceManager",
    "generate_code_verifier",
    "code_challenge_s256",
    # models
    "PkceFlowState",
    "RefreshTokenRecord",
    "RegisteredClient",
    "TokenResponse",
    # errors
    "ClientRegistrationError",
    "ConfigurationError",
    "OAuthError",
    # components
    "FilePersistedCache",
    "PersistedCache",
    "TokenIssuer",
    "TokenSettings",
    "ClientRegistry",
    "UpstreamIdentityClient",
    "IdentityResolver",
    "CredentialForwarder",
    # logging helpers
    "get_auth_logger",
]
