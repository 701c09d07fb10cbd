"""PKCE (Proof Key for Code Exchange) helpers and per-flow state.

RFC 7636 binds an authorization request to the party that started it: a
random *code verifier* is kept secret while its *code challenge* travels with
the authorization request.  Only the S256 transformation is supported.

A broker flow involves two independent PKCE pairs (see
:class:`~mcp_token_broker.central_auth.models.PkceFlowState`); this module
generates the broker's own pair and validates the client's.

This module intentionally performs **no logging** of verifiers or challenges.
"""

from __future__ import annotations

import base64
import hmac
import secrets
from hashlib import sha256
from typing import Final, Iterable

from mcp_token_broker.central_auth.clock import Clock, default_clock
from mcp_token_broker.central_auth.models import PkceFlowState
from mcp_token_broker.central_auth.store import PersistedCache

_VERIFIER_BYTES: Final[int] = 64
_STATE_BYTES: Final[int] = 32

FLOW_KEY_PREFIX: Final[str] = "pkce_state_"
FLOW_TTL_SECONDS: Final[int] = 600


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def random_urlsafe(num_bytes: int) -> str:
    """Return *num_bytes* of CSPRNG output, base64url-encoded without padding."""
    return _b64url(secrets.token_bytes(num_bytes))


def generate_code_verifier(num_bytes: int = _VERIFIER_BYTES) -> str:
    """Generate a high-entropy code verifier.

    Parameters
    ----------
    num_bytes:
        Random bytes to encode (default 64, i.e. an 86-character verifier).
        RFC 7636 limits verifiers to 43-128 characters, i.e. 32-96 bytes.
    """
    if not 32 <= num_bytes <= 96:
        raise ValueError("code verifier must encode 32-96 random bytes")
    return random_urlsafe(num_bytes)


def code_challenge_s256(verifier: str) -> str:
    """Compute the *S256* PKCE code challenge for a given verifier.

    Returns
    -------
    str
        Base64url-encoded SHA-256 hash of the ASCII verifier, without padding.
    """
    return _b64url(sha256(verifier.encode("ascii")).digest())


def validate_verifier(verifier: str | None, challenge: str | None) -> bool:
    """Return *True* if *verifier* hashes to *challenge* under S256."""
    if not verifier or not challenge:
        return False
    try:
        expected = code_challenge_s256(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), challenge.encode("utf-8"))


class PkceManager:
    """Generates PKCE material and persists per-flow state."""

    def __init__(self, cache: PersistedCache, *, clock: Clock = default_clock) -> None:
        self.cache = cache
        self._clock = clock

    @staticmethod
    def generate_challenge_pair() -> tuple[str, str]:
        """Return a fresh ``(verifier, challenge)`` pair."""
        verifier = generate_code_verifier()
        return verifier, code_challenge_s256(verifier)

    @staticmethod
    def generate_state() -> str:
        return random_urlsafe(_STATE_BYTES)

    @staticmethod
    def validate_verifier(verifier: str | None, challenge: str | None) -> bool:
        return validate_verifier(verifier, challenge)

    def store_flow(
        self,
        state: str,
        *,
        upstream_verifier: str,
        upstream_challenge: str,
        client_code_challenge: str,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        provider: str,
        client_state: str = "",
    ) -> PkceFlowState | None:
        """Persist a :class:`PkceFlowState` with a 10-minute absolute expiry.

        Returns ``None`` when the flow could not be written.
        """
        now = self._clock()
        flow = PkceFlowState(
            state=state,
            upstream_verifier=upstream_verifier,
            upstream_challenge=upstream_challenge,
            client_code_challenge=client_code_challenge,
            client_id=client_id,
            redirect_uri=redirect_uri,
            provider=provider,
            scopes=tuple(scopes),
            client_state=client_state,
            created_at=now,
            expires_at=now + FLOW_TTL_SECONDS,
        )
        if not self.cache.set(FLOW_KEY_PREFIX + state, flow.to_dict(), FLOW_TTL_SECONDS):
            return None
        return flow

    def get_flow(self, state: str | None) -> PkceFlowState | None:
        if not state:
            return None
        data = self.cache.get(FLOW_KEY_PREFIX + state)
        if not isinstance(data, dict):
            return None
        try:
            flow = PkceFlowState.from_dict(data)
        except TypeError:
            self.remove_flow(state)
            return None
        if flow.is_expired(clock=self._clock):
            self.remove_flow(state)
            return None
        return flow

    def remove_flow(self, state: str) -> None:
        self.cache.remove(FLOW_KEY_PREFIX + state)

    def consume_flow(self, state: str | None) -> PkceFlowState | None:
        """Atomically read and delete a flow; concurrent callers get it at most once."""
        if not state:
            return None
        data = self.cache.take(FLOW_KEY_PREFIX + state)
        if not isinstance(data, dict):
            return None
        try:
            flow = PkceFlowState.from_dict(data)
        except TypeError:
            return None
        return None if flow.is_expired(clock=self._clock) else flow
