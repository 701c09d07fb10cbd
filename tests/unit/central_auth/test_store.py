"""
Unit tests for FilePersistedCache.

Coverage:
* set/get round-trip and on-disk layout (hashed name, no lingering temp files)
* TTL expiry with a fake clock (lazy delete on get)
* take() is single-use, including under concurrency
* cleanup_expired() removes expired and corrupt entries only
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

from mcp_token_broker.central_auth.store import FilePersistedCache, cache_file_name


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #
def _build_store(tmp_path: Path, clock) -> FilePersistedCache:
    return FilePersistedCache(base_dir=tmp_path, clock=clock)


# --------------------------------------------------------------------------- #
# basic operations                                                            #
# --------------------------------------------------------------------------- #
def test_set_get_round_trip(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)

    assert store.set("pkce_state_abc", {"client_id": "cid", "scopes": ["a"]}, 60) is True
    assert store.get("pkce_state_abc") == {"client_id": "cid", "scopes": ["a"]}

    path = tmp_path / cache_file_name("pkce_state_abc")
    assert path.exists()
    assert len(path.stem) == 32
    assert not list(tmp_path.glob("*.tmp"))

    entry = json.loads(path.read_text())
    assert set(entry) == {"value", "expiresAtUtc", "typeName"}
    assert entry["typeName"] == "dict"


def test_missing_key_returns_none(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    assert store.get("nope") is None
    assert store.take("nope") is None
    store.remove("nope")  # absent key is not an error


def test_set_overwrites(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("k", "first", 60)
    store.set("k", "second", 60)
    assert store.get("k") == "second"


def test_unserialisable_value_reports_failure(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("k", "kept", 60)
    assert store.set("k", object(), 60) is False
    assert store.get("k") == "kept"


# --------------------------------------------------------------------------- #
# TTL                                                                         #
# --------------------------------------------------------------------------- #
def test_expired_entry_is_absent_and_deleted(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("k", "v", 10)

    fake_clock.advance(9)
    assert store.get("k") == "v"

    fake_clock.advance(2)
    assert store.get("k") is None
    assert not (tmp_path / cache_file_name("k")).exists()


def test_take_of_expired_entry_returns_none(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("k", "v", 10)
    fake_clock.advance(11)
    assert store.take("k") is None
    assert not list(tmp_path.iterdir())


# --------------------------------------------------------------------------- #
# take                                                                        #
# --------------------------------------------------------------------------- #
def test_take_is_single_use(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("code", {"n": 1}, 60)

    assert store.take("code") == {"n": 1}
    assert store.take("code") is None
    assert store.get("code") is None
    assert not list(tmp_path.glob("*.claim"))


def test_concurrent_take_has_one_winner(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("code", "value", 60)

    workers = 8
    barrier = threading.Barrier(workers)
    results: list[object] = []
    lock = threading.Lock()

    def taker() -> None:
        barrier.wait()
        value = store.take("code")
        with lock:
            results.append(value)

    threads = [threading.Thread(target=taker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("value") == 1
    assert results.count(None) == workers - 1


# --------------------------------------------------------------------------- #
# maintenance                                                                 #
# --------------------------------------------------------------------------- #
def test_cleanup_expired_removes_stale_and_corrupt(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    store.set("short", 1, 5)
    store.set("long", 2, 500)
    (tmp_path / "garbage.json").write_text("{not json")

    fake_clock.advance(10)
    assert store.cleanup_expired() == 2

    assert store.get("long") == 2
    assert not (tmp_path / "garbage.json").exists()
    assert store.cleanup_expired() == 0


def test_cleanup_removes_leftover_tmp_and_claim_files(tmp_path: Path, fake_clock) -> None:
    store = _build_store(tmp_path, fake_clock)
    old_tmp = tmp_path / "abc.json.0f0f.tmp"
    old_claim = tmp_path / "def.1a2b.claim"
    fresh_tmp = tmp_path / "ghi.json.3c4d.tmp"
    for path in (old_tmp, old_claim, fresh_tmp):
        path.write_text("{}")
    stale = fake_clock() - 10_000
    os.utime(old_tmp, (stale, stale))
    os.utime(old_claim, (stale, stale))
    os.utime(fresh_tmp, (fake_clock(), fake_clock()))

    assert store.cleanup_expired() == 2

    assert not old_tmp.exists()
    assert not old_claim.exists()
    assert fresh_tmp.exists()


def test_sweeper_start_and_close(tmp_path: Path, fake_clock) -> None:
    store = FilePersistedCache(base_dir=tmp_path, clock=fake_clock, cleanup_interval=0.01)
    store.start()
    store.start()  # idempotent
    assert store._sweeper is not None and store._sweeper.is_alive()  # type: ignore[attr-defined]
    store.close()
    assert store._sweeper is None  # type: ignore[attr-defined]
