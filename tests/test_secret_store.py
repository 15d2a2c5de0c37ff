"""Tests for the process secret bootstrap."""

from __future__ import annotations

import errno
import os
import stat
import threading

import pytest

from flixor.secret_store import SECRET_BYTES, SecretStore


def test_generates_and_persists_once(tmp_path):
    path = tmp_path / "config" / "secret.key"
    store = SecretStore(path)

    secret = store.get_secret()

    assert len(secret) == SECRET_BYTES
    assert path.exists()
    assert bytes.fromhex(path.read_text()) == secret
    assert store.status() == {"source": "generated", "degraded": False, "path": str(path)}
    # Only the secret file remains; no temp files left behind
    assert [p.name for p in path.parent.iterdir()] == ["secret.key"]


@pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
def test_secret_file_is_owner_only(tmp_path):
    path = tmp_path / "secret.key"
    SecretStore(path).get_secret()

    mode = stat.S_IMODE(path.stat().st_mode)
    assert mode == 0o600


def test_memoized_within_process(tmp_path):
    store = SecretStore(tmp_path / "secret.key")
    first = store.get_secret()
    (tmp_path / "secret.key").unlink()

    assert store.get_secret() == first


def test_restart_reuses_persisted_secret(tmp_path):
    path = tmp_path / "secret.key"
    first = SecretStore(path).get_secret()

    restarted = SecretStore(path)

    assert restarted.get_secret() == first
    assert restarted.status()["source"] == "persisted"


def test_override_wins_and_file_is_never_touched(tmp_path):
    path = tmp_path / "secret.key"
    store = SecretStore(path, override="aa" * 64)

    assert store.get_secret() == bytes.fromhex("aa" * 64)
    assert store.status()["source"] == "override"
    assert not path.exists()


def test_override_ignores_existing_file(tmp_path):
    path = tmp_path / "secret.key"
    persisted = SecretStore(path).get_secret()

    store = SecretStore(path, override="operator-rotated-value")

    assert store.get_secret() == b"operator-rotated-value"
    assert store.get_secret() != persisted


def test_empty_file_is_regenerated(tmp_path):
    path = tmp_path / "secret.key"
    path.write_text("   \n")

    store = SecretStore(path)
    secret = store.get_secret()

    assert len(secret) == SECRET_BYTES
    assert bytes.fromhex(path.read_text()) == secret


def test_raw_binary_file_is_accepted(tmp_path):
    path = tmp_path / "secret.key"
    raw = bytes(range(1, 65))
    path.write_bytes(raw)

    assert SecretStore(path).get_secret() == raw


def test_unwritable_location_degrades_to_volatile(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = SecretStore(blocker / "secret.key")

    secret = store.get_secret()

    assert len(secret) == SECRET_BYTES
    assert store.degraded is True
    assert store.status()["source"] == "volatile"
    # Still stable for the rest of the process
    assert store.get_secret() == secret


def test_concurrent_first_calls_agree(tmp_path):
    path = tmp_path / "secret.key"
    stores = [SecretStore(path) for _ in range(4)]
    shared = SecretStore(path)
    results: list[bytes] = []
    barrier = threading.Barrier(8)

    def worker(store):
        barrier.wait()
        results.append(store.get_secret())

    threads = [threading.Thread(target=worker, args=(s,)) for s in stores]
    threads += [threading.Thread(target=worker, args=(shared,)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert bytes.fromhex(path.read_text()) == results[0]


def test_filesystem_without_hard_links_still_persists(tmp_path, monkeypatch):
    def no_links(src, dst, *args, **kwargs):
        raise PermissionError(errno.EPERM, "Operation not permitted")

    monkeypatch.setattr(os, "link", no_links)
    path = tmp_path / "config" / "secret.key"

    first = SecretStore(path)
    secret = first.get_secret()
    restarted = SecretStore(path)

    assert first.degraded is False
    assert first.status()["source"] == "generated"
    assert bytes.fromhex(path.read_text()) == secret
    assert restarted.get_secret() == secret
    assert restarted.status()["source"] == "persisted"
    assert [p.name for p in path.parent.iterdir()] == ["secret.key"]
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
