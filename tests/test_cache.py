"""Unit tests for the cache layer: key derivation, stores, manager, archives."""

from __future__ import annotations

import io
import os
import tarfile
import threading
import time

import pytest

from fakes import ExplodingStore, FailingStore
from flowci.cache import (
    CacheManager,
    FileCacheStore,
    KeyContext,
    MemoryCacheStore,
    fingerprint,
    hash_files,
    pack_paths,
    render_template,
    unpack_blob,
)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "Cargo.lock").write_text("serde 1.0.200\n", encoding="utf-8")
    return ws


class TestKeyDerivation:
    """Keys are deterministic fingerprints of declared inputs."""

    def test_fingerprint_is_order_independent(self):
        assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})

    def test_fingerprint_changes_with_inputs(self):
        assert fingerprint({"toolchain": "1.79"}) != fingerprint({"toolchain": "1.80"})

    def test_default_key_tracks_toolchain_and_lockfile(self, workspace):
        """No template: key = fingerprint(toolchain, lockfiles)."""
        mgr = CacheManager(MemoryCacheStore())
        ctx = KeyContext(workspace=workspace, toolchain="rustc 1.80.0")
        key = mgr.derive_key(None, ctx)
        assert key == mgr.derive_key(None, ctx)
        assert key != mgr.derive_key(None, KeyContext(workspace=workspace, toolchain="rustc 1.81.0"))

        (workspace / "Cargo.lock").write_text("serde 1.0.201\n", encoding="utf-8")
        assert key != mgr.derive_key(None, ctx)

    def test_pluggable_fingerprint(self, workspace):
        mgr = CacheManager(MemoryCacheStore(), fingerprint_fn=lambda parts: f"fp-{parts['toolchain']}")
        assert mgr.derive_key(None, KeyContext(workspace=workspace, toolchain="x")) == "fp-x"

    def test_template_rendering(self, workspace):
        ctx = KeyContext(
            workspace=workspace,
            runner_os="Linux",
            ref_name="master",
            matrix={"toolchain": "nightly"},
            env={"SALT": "2"},
        )
        key = render_template(
            "cargo-${{ runner.os }}-${{ matrix.toolchain }}-${{ env.SALT }}-${{ hashFiles('**/Cargo.lock') }}",
            ctx,
        )
        assert key == f"cargo-Linux-nightly-2-{hash_files(workspace, ['**/Cargo.lock'])}"

    def test_hash_files_without_matches_is_empty(self, workspace):
        assert hash_files(workspace, ["nothing-*.lock"]) == ""


class TestMemoryStore:
    def test_get_missing(self):
        assert MemoryCacheStore().get("nope") is None

    def test_last_writer_wins(self):
        store = MemoryCacheStore()
        store.put("k", b"one")
        store.put("k", b"two")
        assert store.get("k") == b"two"


class TestFileStore:
    def test_save_then_restore_returns_same_bytes(self, tmp_path):
        """Restoring a key that was just saved yields the saved bytes."""
        store = FileCacheStore(tmp_path / "cache")
        store.put("scope/key-1", b"\x00\x01payload")
        assert store.get("scope/key-1") == b"\x00\x01payload"
        assert store.entries() == ["scope/key-1"]

    def test_no_temp_files_left_behind(self, tmp_path):
        store = FileCacheStore(tmp_path / "cache")
        store.put("s/k", b"x" * 1000)
        assert not list((tmp_path / "cache").rglob("*.tmp"))

    def test_concurrent_writers_never_leave_partial_blobs(self, tmp_path):
        """Same key from many threads: the result is one of the complete blobs."""
        store = FileCacheStore(tmp_path / "cache")
        blobs = [bytes([i]) * 50_000 for i in range(8)]
        threads = [threading.Thread(target=store.put, args=("s/k", b)) for b in blobs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get("s/k") in blobs

    def test_prune_keeps_newest(self, tmp_path):
        store = FileCacheStore(tmp_path / "cache")
        for i in range(5):
            store.put(f"s/k{i}", b"x")
            blob, _ = store._paths(f"s/k{i}")
            stamp = time.time() - (10 - i)
            os.utime(blob, (stamp, stamp))
        removed = store.prune("s", keep=2)
        assert sorted(removed) == ["s/k0", "s/k1", "s/k2"]
        assert sorted(store.entries()) == ["s/k3", "s/k4"]


class TestCacheManager:
    def test_round_trip(self):
        mgr = CacheManager(MemoryCacheStore())
        assert mgr.save("k", b"blob", scope="test") is True
        hit = mgr.restore("k", scope="test")
        assert hit.hit is True
        assert hit.blob == b"blob"

    def test_miss_is_not_an_error(self):
        hit = CacheManager(MemoryCacheStore()).restore("k")
        assert hit.hit is False
        assert hit.reason == "cache miss"

    def test_scopes_do_not_collide(self):
        """The same fingerprint in two scopes is two entries."""
        mgr = CacheManager(MemoryCacheStore())
        mgr.save("k", b"fmt", scope="rustfmt")
        assert mgr.restore("k", scope="test").hit is False
        mgr.save("k", b"test", scope="test")
        assert mgr.restore("k", scope="rustfmt").blob == b"fmt"
        assert mgr.restore("k", scope="test").blob == b"test"

    def test_save_failure_is_swallowed(self):
        store = FailingStore()
        assert CacheManager(store).save("k", b"x") is False
        assert store.put_calls == 1

    def test_read_failure_is_a_miss(self):
        hit = CacheManager(ExplodingStore()).restore("k")
        assert hit.hit is False
        assert "read failed" in hit.reason


class TestArchives:
    def test_pack_and_unpack_paths(self, tmp_path):
        src = tmp_path / "src"
        (src / "target" / "debug").mkdir(parents=True)
        (src / "target" / "debug" / "app").write_bytes(b"ELF")
        (src / "target" / "__pycache__").mkdir()
        (src / "target" / "__pycache__" / "x.pyc").write_bytes(b"junk")

        blob = pack_paths(src, ["target", "missing-dir"])
        dest = tmp_path / "dest"
        names = unpack_blob(blob, dest)

        assert names == ["target/debug/app"]
        assert (dest / "target" / "debug" / "app").read_bytes() == b"ELF"

    def test_absolute_symlink_is_refused(self, tmp_path):
        """Members are extracted with the tarfile data filter."""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            link = tarfile.TarInfo("target/escape")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc"
            tar.addfile(link)
        with pytest.raises(tarfile.FilterError):
            unpack_blob(buf.getvalue(), tmp_path / "dest")
        assert not (tmp_path / "dest" / "target" / "escape").is_symlink()
