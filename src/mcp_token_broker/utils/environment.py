"""Utility functions related to environment checking."""

import logging
import os
from typing import Final, Tuple

logger = logging.getLogger("mcp-token-broker.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")
_FALSY: Final[Tuple[str, ...]] = ("false", "0", "no", "n", "off")

PROVIDERS: Final[Tuple[str, ...]] = ("google", "microsoft")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def env_bool(name: str, default: bool) -> bool:
    """Read a boolean flag; unknown values fall back to *default*."""
    raw = (os.getenv(name) or "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    if raw:
        logger.warning("Ignoring unrecognised boolean %s=%r", name, raw)
    return default


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Split a space- or comma-separated variable, preserving order."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    items = raw.replace(",", " ").split()
    return tuple(dict.fromkeys(items))


def _provider_get(provider: str, key: str) -> str | None:
    value = os.getenv(f"{provider.upper()}_OAUTH_{key}")
    return value.strip() if value and value.strip() else None


def get_available_providers() -> dict[str, bool]:
    """Report which upstream identity providers have client credentials."""
    available: dict[str, bool] = {}
    for provider in PROVIDERS:
        has_client = bool(
            _provider_get(provider, "CLIENT_ID") and _provider_get(provider, "CLIENT_SECRET")
        )
        available[provider] = has_client
        if has_client:
            logger.info("Upstream provider %s is configured", provider)
        elif _provider_get(provider, "CLIENT_ID") or _provider_get(provider, "CLIENT_SECRET"):
            logger.warning(
                "%s OAuth client id/secret is only partially configured; provider disabled",
                provider.title(),
            )
    return available
