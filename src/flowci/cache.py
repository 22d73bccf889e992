# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import re
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .errors import CacheWriteError
from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed caching shared across runs:
#   key = template rendered against the run context, e.g.
#           "cargo-${{ runner.os }}-${{ hashFiles('**/Cargo.lock') }}"
#         or, with no template, fingerprint({toolchain, lockfiles}).
#
# Equal keys are taken to mean equal content: restore never re-validates.
# Entries are namespaced by scope ("<scope>/<key>") so unrelated jobs only
# collide when they declare the same scope.
#
# Blobs are opaque bytes. For directory caches they are a tar.gz of
# workspace-relative paths (see pack_paths / unpack_blob).
# ---------------------------------------------------------------------


DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".flowci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

DEFAULT_LOCKFILES = [
    "Cargo.lock",
    "poetry.lock",
    "requirements*.txt",
    "package-lock.json",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    blob: Optional[bytes] = None


# ---------------------------------------------------------------------
# Hashing helpers
# ---------------------------------------------------------------------

def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(parts: Mapping[str, Any]) -> str:
    """Default fingerprint: sha256 over a stable JSON encoding of the inputs."""
    return _sha256_str(_json_dumps_stable({"v": 1, **dict(parts)}))


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    for g in globs:
        if fnmatch(rel, g):
            return True
        # "**/x" also covers a top-level "x"
        if g.startswith("**/") and fnmatch(rel, g[3:]):
            return True
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_files(root: str | Path, patterns: Iterable[str]) -> str:
    """
    Hash the contents of every file matching `patterns` under `root`.

    Returns "" when nothing matches, like hashFiles() on hosted runners.
    """
    root_p = Path(root).resolve()
    fps = []
    for p in _resolve_globs(root_p, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root_p)
            if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                continue
            fps.append((rel, _hash_file_contents(f)))
    if not fps:
        return ""
    fps.sort()
    return _sha256_str(_json_dumps_stable(fps))


# ---------------------------------------------------------------------
# Key templates
# ---------------------------------------------------------------------

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_HASH_FILES = re.compile(r"hashFiles\((.*)\)\Z")
_STR_ARG = re.compile(r"'([^']*)'|\"([^\"]*)\"")


@dataclass(frozen=True)
class KeyContext:
    """Values a key template can reference."""
    workspace: Path
    runner_os: str = "Linux"
    ref_name: str = ""
    sha: str = ""
    toolchain: str = ""
    matrix: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)


def render_template(template: str, ctx: KeyContext) -> str:
    """
    Expand ${{ ... }} expressions used in cache keys.

    Supported: hashFiles('a', 'b'), runner.os, github.ref_name, github.sha,
    matrix.<axis>, env.<NAME>, toolchain. Unknown expressions render as "".
    """
    matrix = ctx.matrix
    env = ctx.env

    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        hf = _HASH_FILES.match(expr)
        if hf:
            args = [a or b for a, b in _STR_ARG.findall(hf.group(1))]
            return hash_files(ctx.workspace, args)
        if expr == "runner.os":
            return ctx.runner_os
        if expr == "github.ref_name":
            return ctx.ref_name
        if expr == "github.sha":
            return ctx.sha
        if expr == "toolchain":
            return ctx.toolchain
        if expr.startswith("matrix."):
            return str(matrix.get(expr[len("matrix."):], ""))
        if expr.startswith("env."):
            return env.get(expr[len("env."):], "")
        return ""

    return _EXPR.sub(_sub, template)


# ---------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------

def pack_paths(root: str | Path, paths: Iterable[str], *, excludes: Optional[List[str]] = None) -> bytes:
    """tar.gz the workspace-relative `paths` under `root`. Missing paths are skipped."""
    root_p = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = (root_p / entry).resolve()
            if not src.exists():
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                rel = _relpath(f, root_p)
                if _matches_any_glob(rel, exclude_globs):
                    continue
                tar.add(str(f), arcname=rel, recursive=False)
    return buf.getvalue()


def unpack_blob(blob: bytes, root: str | Path) -> List[str]:
    """Extract a pack_paths() blob into `root`. Returns the restored member names."""
    root_p = Path(root).resolve()
    root_p.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            target = (root_p / m.name).resolve()
            if root_p != target and root_p not in target.parents:
                raise ValueError(f"refusing to extract outside workspace: {m.name}")
        tar.extractall(path=str(root_p), members=members, filter="data")
    return [m.name for m in members]


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, blob: bytes) -> None: ...


class MemoryCacheStore:
    """In-process store. Thread-safe, last writer wins."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, blob: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(blob)

    def entries(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class FileCacheStore:
    """
    File-based cache store:
      root/
        <scope>/
          <sha256(key)>.blob
          <sha256(key)>.key
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        scope, sep, _rest = key.partition("/")
        d = self.root / (scope if sep else "_")
        digest = _sha256_str(key)
        return d / f"{digest}.blob", d / f"{digest}.key"

    def get(self, key: str) -> Optional[bytes]:
        blob, _ = self._paths(key)
        try:
            return blob.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, blob: bytes) -> None:
        art, man = self._paths(key)
        try:
            art.parent.mkdir(parents=True, exist_ok=True)
            # Write to tmp, then atomic rename: readers never see half a blob
            fd, tmp = tempfile.mkstemp(dir=str(art.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                os.replace(tmp, art)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)
            man.write_text(key, encoding="utf-8")
        except OSError as e:
            raise CacheWriteError(f"could not write cache entry {key!r}: {e}") from e

    def entries(self) -> List[str]:
        keys = []
        for man in sorted(self.root.rglob("*.key")):
            keys.append(man.read_text(encoding="utf-8"))
        return keys

    def prune(self, scope: str | None = None, keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries per scope directory.
        Uses file mtime as "newest". Returns the removed keys.
        """
        dirs = [self.root / scope] if scope else [d for d in self.root.iterdir() if d.is_dir()]
        removed: List[str] = []
        for d in dirs:
            if not d.is_dir():
                continue
            blobs = sorted(d.glob("*.blob"), key=lambda p: p.stat().st_mtime, reverse=True)
            for p in blobs[keep:]:
                man = p.with_suffix(".key")
                if man.exists():
                    removed.append(man.read_text(encoding="utf-8"))
                p.unlink(missing_ok=True)
                man.unlink(missing_ok=True)
        return removed


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class CacheManager:
    """
    Best-effort front for a CacheStore.

    restore(): a miss or a read error is never an error for the caller.
    save():    a failed write is logged and reported as False, never raised.
    """

    def __init__(
        self,
        store: CacheStore,
        fingerprint_fn: Callable[[Mapping[str, Any]], str] = fingerprint,
    ):
        self.store = store
        self.fingerprint = fingerprint_fn

    @staticmethod
    def _scoped(key: str, scope: str | None) -> str:
        return f"{scope}/{key}" if scope else key

    def derive_key(self, template: str | None, ctx: KeyContext, *, lockfiles: Optional[List[str]] = None) -> str:
        if template:
            return render_template(template, ctx)
        return self.fingerprint(
            {
                "toolchain": ctx.toolchain,
                "runner_os": ctx.runner_os,
                "lockfiles": hash_files(ctx.workspace, lockfiles or DEFAULT_LOCKFILES),
            }
        )

    def restore(self, key: str, scope: str | None = None) -> CacheHit:
        full = self._scoped(key, scope)
        try:
            blob = self.store.get(full)
        except Exception as e:  # noqa: BLE001 - any backend failure is a miss
            get_console().print_warning(f"cache read failed for {full}: {e}")
            return CacheHit(hit=False, key=key, reason=f"cache read failed: {e}")
        if blob is None:
            return CacheHit(hit=False, key=key, reason="cache miss")
        return CacheHit(hit=True, key=key, reason="cache hit", blob=blob)

    def save(self, key: str, blob: bytes, scope: str | None = None) -> bool:
        full = self._scoped(key, scope)
        started = time.monotonic()
        try:
            self.store.put(full, blob)
        except Exception as e:  # noqa: BLE001 - a failed save never fails the job
            get_console().print_warning(f"cache save failed for {full}: {e}")
            return False
        get_console().print_debug(
            f"cache saved {full} ({len(blob)} bytes, {time.monotonic() - started:.2f}s)"
        )
        return True
