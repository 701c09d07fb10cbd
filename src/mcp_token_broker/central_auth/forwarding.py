"""Outbound credential forwarding for calls to the downstream resource API.

The inbound request's bearer token is either forwarded unchanged
(``broker`` mode: the downstream API validates broker tokens itself) or
swapped for the upstream provider token embedded in it (``upstream`` mode).
No inbound credential means nothing is attached; the downstream API decides.

The hooks are plain :class:`requests.auth.AuthBase` objects, so any
``requests`` call can use them via ``auth=``.
"""

from __future__ import annotations

import logging
from typing import Literal

import requests

from mcp_token_broker.central_auth.tokens import TokenIssuer

_LOG = logging.getLogger("mcp-token-broker.central_auth.forwarding")

ForwardingMode = Literal["broker", "upstream"]


def bearer_from_header(authorization: str | None) -> str | None:
    """Return the token of a ``Bearer`` Authorization header, else ``None``."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class BearerAuth(requests.auth.AuthBase):
    """Attach a fixed bearer token (or nothing, when it is ``None``)."""

    def __init__(self, token: str | None) -> None:
        self.token = token

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        if self.token:
            r.headers["Authorization"] = f"Bearer {self.token}"
        return r


class CredentialForwarder:
    """Chooses the credential to send downstream for an inbound request."""

    def __init__(self, tokens: TokenIssuer, mode: ForwardingMode = "broker") -> None:
        if mode not in ("broker", "upstream"):
            raise ValueError(f"unknown forwarding mode: {mode}")
        self.tokens = tokens
        self.mode = mode

    def outbound_credential(self, inbound_authorization: str | None) -> str | None:
        token = bearer_from_header(inbound_authorization)
        if token is None:
            _LOG.debug("No inbound bearer credential; nothing forwarded")
            return None
        if self.mode == "broker":
            return token
        upstream = self.tokens.extract_upstream_token(token)
        if upstream is None:
            _LOG.warning("Inbound token carries no usable upstream credential")
        return upstream

    def auth_for(self, inbound_authorization: str | None) -> BearerAuth:
        """Return a ``requests`` auth hook carrying the forwarded credential."""
        return BearerAuth(self.outbound_credential(inbound_authorization))
