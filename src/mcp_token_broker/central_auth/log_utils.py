"""Context-carrying loggers for the authorization flows.

Only a fixed set of *non-sensitive* fields can be attached:

- ``client_id``      – OAuth client identifier (public by definition)
- ``provider``       – Upstream identity provider (``google``, ``microsoft``)
- ``flow``           – First 6 characters of the broker's flow ``state``
- ``correlation_id`` – Request correlation identifier set by the HTTP layer

The fields go into ``record.__dict__`` for structured handlers and are also
appended to the message, so the plain formatter from
:func:`mcp_token_broker.utils.logging.setup_logging` shows them.

>>> log = get_auth_logger(client_id="claude", provider="google", flow="Xk3pQz9w")
>>> log.info("Authorization started")   # "... Authorization started [client_id=claude provider=google flow=Xk3pQz]"
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping

CONTEXT_FIELDS: tuple[str, ...] = ("client_id", "provider", "flow", "correlation_id")
_FLOW_PREFIX_CHARS = 6


def _whitelisted(context: Mapping[str, Any] | None) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for name in CONTEXT_FIELDS:
        value = (context or {}).get(name)
        if value is None or value == "":
            continue
        cleaned[name] = str(value)[:_FLOW_PREFIX_CHARS] if name == "flow" else value
    return cleaned


class AuthContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that tags every record with whitelisted flow context."""

    def __init__(self, logger: logging.Logger, context: Mapping[str, Any] | None = None):
        super().__init__(logger, _whitelisted(context))

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]):
        extra = kwargs.get("extra") or {}
        for name, value in self.extra.items():
            extra.setdefault(name, value)
        kwargs["extra"] = extra
        if not self.extra:
            return msg, kwargs
        tags = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"{msg} [{tags}]", kwargs


def get_auth_logger(
    *,
    base_logger_name: str = "mcp-token-broker.central_auth",
    client_id: str | None = None,
    provider: str | None = None,
    flow: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    return AuthContextAdapter(
        logging.getLogger(base_logger_name),
        {
            "client_id": client_id,
            "provider": provider,
            "flow": flow,
            "correlation_id": correlation_id,
        },
    )
