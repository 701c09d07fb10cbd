"""Durable, file-backed key/value cache for the token broker.

Every logical key maps to one JSON file named after a fixed-length hash of
the key, so externally supplied identifiers (states, codes, client ids) never
reach the filesystem verbatim.  Each file holds::

    {"value": <json>, "expiresAtUtc": "<ISO-8601>", "typeName": "<type>"}

Design goals:

* **Atomicity** – writes use *temp-file + os.replace*; readers never observe a
  half-written entry.
* **Single use** – :meth:`FilePersistedCache.take` claims an entry with an
  atomic rename, so of several concurrent callers exactly one gets the value.
* **Fail soft** – I/O errors are logged and reported as "absent" /
  "not stored"; they never propagate into request handling.
* **Explicit lifecycle** – the background sweeper is started and stopped by
  the owner of the cache (the server lifespan), there is no module singleton.

Environment variables
---------------------
MCP_CACHE_DIR
    Base directory for all persisted entries.  Defaults to
    ``$HOME/data/mcp-cache`` when a home directory exists, otherwise
    ``./mcp-cache``.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from hashlib import sha256
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from mcp_token_broker.central_auth.clock import (
    Clock,
    default_clock,
    parse_utc_iso,
    utc_iso,
)

_LOG = logging.getLogger("mcp-token-broker.central_auth.store")

_HASH_CHARS = 32
_DEFAULT_CLEANUP_SECONDS = 300

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def cache_file_name(key: str) -> str:
    """Return the on-disk file name for *key*."""
    return sha256(key.encode("utf-8")).hexdigest()[:_HASH_CHARS] + ".json"


def default_cache_dir() -> Path:
    """Resolve the cache directory from the environment."""
    override = os.getenv("MCP_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    home = os.getenv("HOME")
    if home and Path(home).is_dir():
        return Path(home) / "data" / "mcp-cache"
    return Path.cwd() / "mcp-cache"


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # unique temp name: two writers of one key must not share a temp file
    tmp = path.with_name(f"{path.name}.{secrets.token_hex(6)}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, separators=(",", ":"))
        os.replace(tmp, path)  # atomic on POSIX
    finally:
        tmp.unlink(missing_ok=True)


def _read_entry(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as fh:
        entry = json.load(fh)
    if not isinstance(entry, dict) or "expiresAtUtc" not in entry:
        raise ValueError("malformed cache entry")
    return entry


def _type_name(value: Any) -> str:
    return type(value).__name__


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class PersistedCache(Protocol):
    """Minimal persistence contract used by every broker component."""

    def set(self, key: str, value: Any, ttl_seconds: float) -> bool: ...
    def get(self, key: str) -> Any | None: ...
    def take(self, key: str) -> Any | None: ...
    def remove(self, key: str) -> None: ...


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class FilePersistedCache(PersistedCache):
    """JSON-file implementation of :class:`PersistedCache`."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        clock: Clock = default_clock,
        cleanup_interval: float = _DEFAULT_CLEANUP_SECONDS,
    ) -> None:
        self.base_dir = Path(base_dir or default_cache_dir()).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self.cleanup_interval = cleanup_interval
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        _LOG.info("Persisted cache directory: %s", self.base_dir)

    def _path(self, key: str) -> Path:
        return self.base_dir / cache_file_name(key)

    # ---------------- basic operations ----------------------------------- #
    def set(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Store *value* (JSON-serialisable) for *ttl_seconds*.

        Returns ``False`` when the write failed; the previous value, if any,
        is left untouched in that case.
        """
        entry = {
            "value": value,
            "expiresAtUtc": utc_iso(self._clock() + ttl_seconds),
            "typeName": _type_name(value),
        }
        try:
            _atomic_write(self._path(key), entry)
        except (OSError, TypeError, ValueError) as exc:
            _LOG.error("Failed to persist cache entry %s: %s", cache_file_name(key), exc)
            return False
        return True

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            entry = _read_entry(path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            _LOG.warning("Unreadable cache entry %s: %s", path.name, exc)
            return None

        if self._expired(entry):
            path.unlink(missing_ok=True)
            return None
        return entry.get("value")

    def take(self, key: str) -> Any | None:
        """Return and atomically remove the value stored under *key*."""
        src = self._path(key)
        claim = src.with_name(f"{src.stem}.{secrets.token_hex(6)}.claim")
        try:
            os.replace(src, claim)  # fails if a concurrent taker won
        except FileNotFoundError:
            return None
        except OSError as exc:
            _LOG.error("Failed to claim cache entry %s: %s", src.name, exc)
            return None

        try:
            entry = _read_entry(claim)
        except (OSError, ValueError) as exc:
            _LOG.warning("Unreadable cache entry %s: %s", src.name, exc)
            return None
        finally:
            claim.unlink(missing_ok=True)

        if self._expired(entry):
            return None
        return entry.get("value")

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            _LOG.error("Failed to remove cache entry %s: %s", cache_file_name(key), exc)

    def _expired(self, entry: dict[str, Any]) -> bool:
        try:
            expires_at = parse_utc_iso(str(entry["expiresAtUtc"]))
        except (KeyError, ValueError):
            return True
        return self._clock() >= expires_at

    # ---------------- maintenance ---------------------------------------- #
    def cleanup_expired(self) -> int:
        """Delete expired and unparsable entries; return how many went."""
        removed = 0
        for path in self.base_dir.glob("*.json"):
            try:
                entry = _read_entry(path)
                stale = self._expired(entry)
            except FileNotFoundError:
                continue  # removed by a request in the meantime
            except (OSError, ValueError):
                stale = True
            if stale:
                try:
                    path.unlink(missing_ok=True)
                    removed += 1
                except OSError as exc:
                    _LOG.warning("Could not delete cache entry %s: %s", path.name, exc)
        removed += self._cleanup_leftovers()
        if removed:
            _LOG.debug("Cache sweep removed %d entries", removed)
        return removed

    def _cleanup_leftovers(self) -> int:
        """Delete temp and claim files older than one sweep interval."""
        cutoff = self._clock() - self.cleanup_interval
        removed = 0
        for pattern in ("*.tmp", "*.claim"):
            for path in self.base_dir.glob(pattern):
                try:
                    if path.stat().st_mtime > cutoff:
                        continue  # a write or take may still be using it
                    path.unlink(missing_ok=True)
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    _LOG.warning("Could not delete leftover file %s: %s", path.name, exc)
        return removed

    def start(self) -> None:
        """Start the background sweeper thread (idempotent)."""
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="mcp-cache-sweeper", daemon=True
        )
        self._sweeper.start()

    def close(self) -> None:
        """Stop the sweeper and wait for it to exit."""
        self._stop.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            try:
                self.cleanup_expired()
            except Exception:  # noqa: BLE001
                _LOG.exception("Cache sweep failed")
