"""Logging helpers shared across the broker."""

from __future__ import annotations

import logging
import os
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Return *value* with everything but the last *keep_chars* characters masked.

    >>> mask_sensitive("supersecrettoken", 4)
    '****oken'
    >>> mask_sensitive(None)
    '<none>'
    """
    if value is None:
        return "<none>"
    text = str(value)
    if len(text) <= keep_chars * 2:
        return "*" * len(text)
    return "*" * 4 + text[-keep_chars:]


def setup_logging(level: str | int | None = None, *, stream=None) -> logging.Logger:
    """Configure the ``mcp-token-broker`` logger hierarchy.

    The level comes from *level*, else ``MCP_LOG_LEVEL``, else ``INFO``.
    """
    resolved = level or os.getenv("MCP_LOG_LEVEL", "INFO")
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO

    logger = logging.getLogger("mcp-token-broker")
    logger.setLevel(resolved)
    if not logger.handlers:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    return logger
