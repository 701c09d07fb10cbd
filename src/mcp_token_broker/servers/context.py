from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_token_broker.central_auth.forwarding import CredentialForwarder
    from mcp_token_broker.config import BrokerConfig


@dataclass(frozen=True)
class MainAppContext:
    """
    Context built at server startup and shared by all tools.
    Tools reach the downstream API through ``forwarder`` so that the caller's
    credential, not a server-wide one, is attached to every call.
    """

    config: BrokerConfig
    forwarder: CredentialForwarder
    api_base_url: str | None = None
    api_timeout_seconds: float = 30.0
