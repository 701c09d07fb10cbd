"""Issuance, validation and rotation of broker-issued tokens.

Access tokens are HS256 JWTs signed with the broker's key; issuer and
audience are both the broker's canonical URL.  When configured, the upstream
provider's access token travels inside the JWT as one encrypted claim
(``upstream_token``) so a forwarder can recover it without server-side state.

Refresh tokens are opaque random strings.  Only their SHA-256 hash is
persisted, as a :class:`RefreshTokenRecord`, together with a per-user index
used for bulk revocation.  A refresh token can be redeemed exactly once.
"""

from __future__ import annotations

import hmac
import logging
import threading
import uuid
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Final, Iterable, Mapping

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from mcp_token_broker.central_auth.cipher import (
    DecryptionError,
    decrypt_token,
    derive_token_key,
    encrypt_token,
)
from mcp_token_broker.central_auth.clock import Clock, default_clock
from mcp_token_broker.central_auth.models import RefreshTokenRecord, TokenResponse
from mcp_token_broker.central_auth.pkce import random_urlsafe
from mcp_token_broker.central_auth.store import PersistedCache
from mcp_token_broker.utils.logging import mask_sensitive

_LOG = logging.getLogger("mcp-token-broker.central_auth.tokens")

ALGORITHM: Final[str] = "HS256"
UPSTREAM_TOKEN_CLAIM: Final[str] = "upstream_token"
CLOCK_SKEW_SECONDS: Final[int] = 60

REFRESH_KEY_PREFIX: Final[str] = "mcp_refresh_token_"
USER_INDEX_PREFIX: Final[str] = "mcp_user_tokens_"
USER_INDEX_TTL_SECONDS: Final[int] = 7 * 24 * 3600
_REFRESH_TOKEN_BYTES: Final[int] = 64

_CLAIMS_NS = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/"

# Long-form claim names some identity stacks emit -> short JWT names.
CLAIM_TYPE_MAP: Final[dict[str, str]] = {
    _CLAIMS_NS + "nameidentifier": "sub",
    _CLAIMS_NS + "name": "name",
    _CLAIMS_NS + "emailaddress": "email",
    _CLAIMS_NS + "givenname": "given_name",
    _CLAIMS_NS + "surname": "family_name",
}

# Set by the issuer, never taken from caller-supplied claims.
_RESERVED_CLAIMS: Final[frozenset[str]] = frozenset(
    {"jti", "iat", "nbf", "exp", "iss", "aud", "client_id", "scope", UPSTREAM_TOKEN_CLAIM}
)


def hash_refresh_token(refresh_token: str) -> str:
    """Upper-case hex SHA-256 of *refresh_token*."""
    return sha256(refresh_token.encode("utf-8")).hexdigest().upper()


def normalize_claims(claims: Mapping[str, Any]) -> dict[str, Any]:
    """Map long-form claim names to short ones and drop reserved/empty claims."""
    normalized: dict[str, Any] = {}
    for name, value in claims.items():
        short = CLAIM_TYPE_MAP.get(name, name)
        if short in _RESERVED_CLAIMS or value is None or value == "":
            continue
        normalized[short] = value
    return normalized


@dataclass(frozen=True)
class TokenSettings:
    """Signing and lifetime parameters for :class:`TokenIssuer`."""

    issuer: str
    signing_key: str
    encryption_key: str | None = None
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 24 * 3600
    include_upstream_token: bool = True


class TokenIssuer:
    """Mints, validates, rotates and revokes broker tokens."""

    def __init__(
        self,
        settings: TokenSettings,
        cache: PersistedCache,
        *,
        clock: Clock = default_clock,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._issuer = settings.issuer.rstrip("/")
        self._encryption_key = derive_token_key(
            settings.encryption_key or settings.signing_key
        )
        self._index_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Issuance                                                           #
    # ------------------------------------------------------------------ #
    def mint(
        self,
        claims: Mapping[str, Any],
        upstream_access_token: str,
        upstream_refresh_token: str | None = None,
        scopes: Iterable[str] = (),
        client_id: str = "",
        *,
        access_token_ttl: int | None = None,
        issue_refresh_token: bool = True,
    ) -> TokenResponse:
        """Return a signed access token and (by default) a fresh refresh token.

        The raw refresh token exists only in the returned value; the cache
        keeps its hash.
        """
        now = int(self._clock())
        ttl = access_token_ttl or self.settings.access_token_ttl
        token_id = uuid.uuid4().hex
        scope_list = list(dict.fromkeys(scopes))
        scope = " ".join(scope_list)

        payload = normalize_claims(claims)
        user_id = str(payload.get("sub") or uuid.uuid4().hex)
        payload["sub"] = user_id
        payload.update(
            {
                "jti": token_id,
                "iat": now,
                "nbf": now,
                "exp": now + ttl,
                "iss": self._issuer,
                "aud": self._issuer,
                "client_id": client_id,
                "scope": scope,
            }
        )
        if self.settings.include_upstream_token and upstream_access_token:
            payload[UPSTREAM_TOKEN_CLAIM] = encrypt_token(
                upstream_access_token, self._encryption_key
            )
        access_token = jwt.encode(payload, self.settings.signing_key, algorithm=ALGORITHM)

        refresh_token: str | None = None
        if issue_refresh_token:
            refresh_token = self._store_refresh_token(
                token_id=token_id,
                user_id=user_id,
                client_id=client_id,
                scopes=scope_list,
                upstream_access_token=upstream_access_token,
                upstream_refresh_token=upstream_refresh_token,
                now=now,
            )

        _LOG.info(
            "Minted broker token jti=%s client_id=%s expires_in=%ss refresh=%s",
            token_id[:8],
            client_id,
            ttl,
            bool(refresh_token),
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=ttl,
            scope=scope,
            refresh_token=refresh_token,
        )

    def _store_refresh_token(
        self,
        *,
        token_id: str,
        user_id: str,
        client_id: str,
        scopes: list[str],
        upstream_access_token: str,
        upstream_refresh_token: str | None,
        now: int,
    ) -> str | None:
        refresh_token = random_urlsafe(_REFRESH_TOKEN_BYTES)
        token_hash = hash_refresh_token(refresh_token)
        record = RefreshTokenRecord(
            token_id=token_id,
            user_id=user_id,
            client_id=client_id,
            scopes=tuple(scopes),
            upstream_access_token=upstream_access_token,
            upstream_refresh_token=upstream_refresh_token,
            created_at=now,
            expires_at=now + self.settings.refresh_token_ttl,
        )
        if not self.cache.set(
            REFRESH_KEY_PREFIX + token_hash,
            record.to_dict(),
            self.settings.refresh_token_ttl,
        ):
            _LOG.error("Refresh token for jti=%s could not be stored", token_id[:8])
            return None
        self._index_add(user_id, token_hash)
        return refresh_token

    # ------------------------------------------------------------------ #
    # Rotation & revocation                                              #
    # ------------------------------------------------------------------ #
    def refresh(self, refresh_token: str | None, client_id: str | None) -> TokenResponse | None:
        """Redeem *refresh_token* once and return a new token pair.

        Every failure returns ``None`` without saying which check failed.
        A client mismatch leaves the record in place.
        """
        if not refresh_token or not client_id:
            return None
        token_hash = hash_refresh_token(refresh_token)
        key = REFRESH_KEY_PREFIX + token_hash

        record = self._load_record(self.cache.get(key))
        if record is None:
            _LOG.debug("Refresh token %s not found", mask_sensitive(token_hash, 6))
            return None
        if record.is_expired(clock=self._clock):
            self.cache.remove(key)
            _LOG.info("Refresh token for user=%s expired", mask_sensitive(record.user_id, 4))
            return None
        if not hmac.compare_digest(record.client_id.encode(), client_id.encode()):
            _LOG.warning("Refresh token presented by a different client_id=%s", client_id)
            return None

        # the record is gone before its replacement is minted
        claimed = self._load_record(self.cache.take(key))
        if claimed is None:
            _LOG.info("Refresh token %s already redeemed", mask_sensitive(token_hash, 6))
            return None
        self._index_discard(claimed.user_id, token_hash)

        return self.mint(
            {"sub": claimed.user_id},
            claimed.upstream_access_token,
            claimed.upstream_refresh_token,
            claimed.scopes,
            claimed.client_id,
        )

    def revoke(self, refresh_token: str | None, *, client_id: str | None = None) -> bool:
        """Delete the record for *refresh_token*; *False* if there was none.

        With *client_id*, only a token issued to that client is revoked.
        """
        if not refresh_token:
            return False
        token_hash = hash_refresh_token(refresh_token)
        key = REFRESH_KEY_PREFIX + token_hash
        if client_id is not None:
            owner = self._load_record(self.cache.get(key))
            if owner is None or owner.client_id != client_id:
                return False
        record = self._load_record(self.cache.take(key))
        if record is None:
            return False
        self._index_discard(record.user_id, token_hash)
        return True

    def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every refresh token indexed for *user_id*; return the count."""
        index_key = USER_INDEX_PREFIX + user_id
        with self._index_lock:
            hashes = self.cache.get(index_key)
            self.cache.remove(index_key)
        if not isinstance(hashes, list):
            return 0

        removed = 0
        for token_hash in hashes:
            if self.cache.take(REFRESH_KEY_PREFIX + str(token_hash)) is not None:
                removed += 1
        _LOG.info(
            "Revoked %d refresh tokens for user=%s", removed, mask_sensitive(user_id, 4)
        )
        return removed

    # ------------------------------------------------------------------ #
    # Inspection                                                         #
    # ------------------------------------------------------------------ #
    def extract_upstream_token(self, access_token: str | None) -> str | None:
        """Return the decrypted upstream credential carried by *access_token*.

        The signature is not checked: this reads a token the broker already
        accepted on the inbound request.
        """
        if not access_token:
            return None
        try:
            claims = jwt.get_unverified_claims(access_token)
        except JWTError:
            return None
        encrypted = claims.get(UPSTREAM_TOKEN_CLAIM)
        if not isinstance(encrypted, str) or not encrypted:
            return None
        try:
            return decrypt_token(encrypted, self._encryption_key)
        except DecryptionError as exc:
            _LOG.warning("Upstream token claim could not be decrypted: %s", exc)
            return None

    def validate(self, access_token: str | None) -> dict[str, Any] | None:
        """Verify signature, issuer, audience and lifetime; claims or ``None``.

        Lifetime is checked against the issuer's clock with
        ``CLOCK_SKEW_SECONDS`` of tolerance.
        """
        if not access_token:
            return None
        try:
            claims = jwt.decode(
                access_token,
                self.settings.signing_key,
                algorithms=[ALGORITHM],
                audience=self._issuer,
                issuer=self._issuer,
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
            )
        except JWTClaimsError as exc:
            _LOG.info("Rejected broker token: %s", exc)
            return None
        except (JWTError, ValueError) as exc:
            _LOG.info("Rejected broker token: %s", type(exc).__name__)
            return None

        now = self._clock()
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or now > exp + CLOCK_SKEW_SECONDS:
            _LOG.info("Rejected broker token: expired")
            return None
        nbf = claims.get("nbf")
        if isinstance(nbf, (int, float)) and now + CLOCK_SKEW_SECONDS < nbf:
            _LOG.info("Rejected broker token: not yet valid")
            return None
        return claims


    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    @staticmethod
    def _load_record(data: Any) -> RefreshTokenRecord | None:
        if not isinstance(data, dict):
            return None
        try:
            return RefreshTokenRecord.from_dict(data)
        except TypeError:
            _LOG.warning("Discarding malformed refresh token record")
            return None

    def _index_add(self, user_id: str, token_hash: str) -> None:
        key = USER_INDEX_PREFIX + user_id
        with self._index_lock:
            existing = self.cache.get(key)
            hashes = list(existing) if isinstance(existing, list) else []
            if token_hash not in hashes:
                hashes.append(token_hash)
            self.cache.set(key, hashes, USER_INDEX_TTL_SECONDS)

    def _index_discard(self, user_id: str, token_hash: str) -> None:
        key = USER_INDEX_PREFIX + user_id
        with self._index_lock:
            existing = self.cache.get(key)
            if not isinstance(existing, list) or token_hash not in existing:
                return
            hashes = [h for h in existing if h != token_hash]
            if hashes:
                self.cache.set(key, hashes, USER_INDEX_TTL_SECONDS)
            else:
                self.cache.remove(key)
