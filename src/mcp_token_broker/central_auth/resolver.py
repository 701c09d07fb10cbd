"""Map an upstream identity to the downstream API's numeric user id."""

from __future__ import annotations

import logging
from typing import Any, Final, Mapping

import requests

from mcp_token_broker.central_auth.cipher import DecryptionError, StringCipher
from mcp_token_broker.central_auth.forwarding import BearerAuth
from mcp_token_broker.central_auth.tokens import TokenIssuer
from mcp_token_broker.downstream import DownstreamApiClient, DownstreamApiError
from mcp_token_broker.utils.logging import mask_sensitive

_LOG = logging.getLogger("mcp-token-broker.central_auth.resolver")

RESOLVE_PATH: Final[str] = "api/users/resolve-mcp"
INTERNAL_CLIENT_ID: Final[str] = "mcp-internal-resolver"
INTERNAL_SCOPES: Final[tuple[str, ...]] = ("mcp:tools",)
INTERNAL_TOKEN_TTL_SECONDS: Final[int] = 300


class IdentityResolver:
    """Resolves (and lets the API auto-provision) users by email.

    The resolution call is authenticated with a short-lived broker token, the
    same way a forwarded tool call would be.  The API answers with an
    encrypted id that only the shared ``pk_secret`` can open.
    """

    def __init__(
        self,
        tokens: TokenIssuer,
        *,
        api_base_url: str,
        pk_secret: str,
        timeout: float = 30.0,
    ) -> None:
        self.tokens = tokens
        self.api_base_url = api_base_url
        self.pk_secret = pk_secret
        self.timeout = timeout

    def resolve(
        self,
        email: str | None,
        upstream_access_token: str,
        temp_claims: Mapping[str, Any],
    ) -> int | None:
        """Return the numeric user id for *email*, or ``None`` on any failure."""
        if not email:
            return None
        display_name = temp_claims.get("name") or email.split("@", 1)[0]
        body: dict[str, Any] = {"email": email, "displayName": display_name}
        if temp_claims.get("provider"):
            body["provider"] = temp_claims["provider"]

        try:
            internal = self.tokens.mint(
                temp_claims,
                upstream_access_token,
                None,
                INTERNAL_SCOPES,
                INTERNAL_CLIENT_ID,
                access_token_ttl=INTERNAL_TOKEN_TTL_SECONDS,
                issue_refresh_token=False,
            )
            client = DownstreamApiClient(
                self.api_base_url,
                auth=BearerAuth(internal.access_token),
                timeout=self.timeout,
            )
            data = client.post_json(RESOLVE_PATH, body)
        except (requests.RequestException, DownstreamApiError) as exc:
            _LOG.error("User resolution call failed: %s", exc)
            return None
        except Exception:  # noqa: BLE001
            _LOG.exception("Unexpected error during user resolution")
            return None

        if not isinstance(data, dict) or not data.get("encryptedUserId"):
            _LOG.error("User resolution response lacks encryptedUserId")
            return None

        try:
            plaintext = StringCipher.decrypt(str(data["encryptedUserId"]), self.pk_secret)
            user_id = int(plaintext.strip())
        except (DecryptionError, ValueError):
            _LOG.error("Could not decrypt resolved user id for %s", mask_sensitive(email, 6))
            return None
        if user_id <= 0:
            _LOG.error("Resolved user id is not positive")
            return None

        if data.get("wasProvisioned"):
            _LOG.info("Provisioned new downstream user id=%s", user_id)
        else:
            _LOG.debug("Resolved existing downstream user id=%s", user_id)
        return user_id
