"""Clock abstraction for testable time handling in the token broker.

Every expiry decision inside ``central_auth`` (cache TTLs, PKCE flow lifetime,
refresh-token expiry, registered-client expiry) depends on an injected
``Clock`` instead of calling ``time.time()`` directly, so tests can move time
forward without sleeping.

Example
-------
>>> from mcp_token_broker.central_auth.clock import default_clock, utc_iso
>>> isinstance(default_clock(), float)
True
>>> utc_iso(0)
'1970-01-01T00:00:00+00:00'
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Default implementation that delegates to ``time.time()``."""
    return time.time()


def utc_iso(timestamp: float) -> str:
    """Render a UNIX timestamp as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def parse_utc_iso(value: str) -> float:
    """Inverse of :func:`utc_iso`; naive values are read as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()
