# cache.py
from __future__ import annotations

import fnmatch
import hashlib
import json
import os
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Keyed build-state cache:
#   key = "{prefix}-{partition}-{hash(lock files)[:16]}"
#
# Restore:
#   1. exact key
#   2. for each restore prefix, in order, the newest entry whose key
#      starts with it ("{prefix}-{partition}-", then "{prefix}-")
#   3. otherwise a miss (cold start, not an error)
#
# Save:
#   a tar.gz of the declared paths plus a small JSON manifest. The manifest
#   carries a digest of the archived content; saving identical content again
#   is a no-op. Different content overwrites the key (last writer wins).
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".pipegate/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".pipegate/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    digest: str
    archive: Path
    created_at: float


@dataclass(frozen=True)
class CacheSaveResult:
    key: str
    digest: str
    written: bool
    files: int


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        # fnmatch lets "*" cross "/", so ".git/**" also covers nested files
        if fnmatch.fnmatchcase(rel, g):
            return True
        try:
            if rel_path.match(g):
                return True
        except ValueError:
            continue
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


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "target/"
      - glob:      "**/requirements*.txt"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(root.glob(pat))
        except (ValueError, NotImplementedError):
            matches = []
        out.extend([m for m in matches if m.exists()])

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _collect_files(
    root: Path,
    patterns: Sequence[str],
    *,
    excludes: Sequence[str],
) -> List[Tuple[str, Path]]:
    files: Dict[str, Path] = {}
    for p in _resolve_globs(root, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p))
        for f in candidates:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            files[rel] = f
    return sorted(files.items())


def hash_files(
    root: str | Path,
    patterns: Sequence[str],
    *,
    excludes: Optional[Sequence[str]] = None,
) -> str:
    """Stable digest over relative paths + contents of every matched file."""
    root = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    fps = [(rel, _hash_file_contents(f)) for rel, f in _collect_files(root, patterns, excludes=exclude_globs)]
    return _sha256_str(_json_dumps_stable({"files": fps}))


def cache_key(prefix: str, partition: str, key_files: Sequence[str], root: str | Path = ".") -> str:
    return f"{prefix}-{partition}-{hash_files(root, key_files)[:16]}"


def restore_prefixes(prefix: str, partition: str) -> List[str]:
    return [f"{prefix}-{partition}-", f"{prefix}-"]


class CacheStore:
    """
    File-based cache store, shared by every job and run on this machine:
      root/
        <slot>.tar.gz
        <slot>.json      {"key", "digest", "created_at", "files"}
    where slot = sha256(key)[:32].
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        # one writer lock per key, dropped again when prune removes the key
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @staticmethod
    def _slot(key: str) -> str:
        return _sha256_str(key)[:32]

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{self._slot(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{self._slot(key)}.json"

    def _entry_from_manifest(self, path: Path) -> Optional[CacheEntry]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        archive = path.with_suffix(".tar.gz")
        if not archive.exists() or "key" not in data:
            return None
        return CacheEntry(
            key=data["key"],
            digest=data.get("digest", ""),
            archive=archive,
            created_at=float(data.get("created_at", 0)),
        )

    def entries(self) -> List[CacheEntry]:
        """All entries, newest first."""
        out = []
        for man in self.root.glob("*.json"):
            entry = self._entry_from_manifest(man)
            if entry is not None:
                out.append(entry)
        return sorted(out, key=lambda e: e.created_at, reverse=True)

    def lookup(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        exact = self._entry_from_manifest(self.manifest_path(key))
        if exact is not None and exact.key == key:
            return exact

        if not restore_keys:
            return None
        entries = self.entries()
        for prefix in restore_keys:
            for entry in entries:
                if entry.key.startswith(prefix):
                    return entry
        return None

    def restore(
        self,
        key: str,
        restore_keys: Sequence[str] = (),
        *,
        into: str | Path = ".",
    ) -> Optional[CacheEntry]:
        """
        Extract the best matching entry into `into`.
        Returns None on a miss, including an entry that exists but fails to extract.
        """
        entry = self.lookup(key, restore_keys)
        if entry is None:
            return None

        dest = Path(into).resolve()
        dest.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(str(entry.archive), mode="r:gz") as tar:
                tar.extractall(path=str(dest), filter="data")
        except (OSError, tarfile.TarError):
            return None
        return entry

    def save(
        self,
        key: str,
        paths: Sequence[str],
        *,
        root: str | Path = ".",
        excludes: Optional[Sequence[str]] = None,
    ) -> CacheSaveResult:
        """
        Archive `paths` (relative to `root`) under `key`.

        No files -> nothing written. Same content digest as the stored
        entry -> nothing written. Otherwise the entry is replaced atomically.
        """
        root_p = Path(root).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
        files = _collect_files(root_p, paths, excludes=exclude_globs)
        fps = [(rel, _hash_file_contents(f)) for rel, f in files]
        digest = _sha256_str(_json_dumps_stable({"files": fps}))

        if not files:
            return CacheSaveResult(key=key, digest=digest, written=False, files=0)

        art = self.artifact_path(key)
        man = self.manifest_path(key)

        with self._lock(key):
            current = self._entry_from_manifest(man)
            if current is not None and current.key == key and current.digest == digest:
                return CacheSaveResult(key=key, digest=digest, written=False, files=len(files))

            suffix = f".{os.getpid()}.{threading.get_ident()}.tmp"
            tmp_art = art.with_name(art.name + suffix)
            tmp_man = man.with_name(man.name + suffix)
            try:
                # Build tar.gz in tmp, then atomic rename
                with tarfile.open(str(tmp_art), mode="w:gz") as tar:
                    for rel, f in files:
                        tar.add(str(f), arcname=rel, recursive=False)
                manifest = {
                    "key": key,
                    "digest": digest,
                    "created_at": time.time(),
                    "files": len(files),
                }
                tmp_man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
                tmp_art.replace(art)
                tmp_man.replace(man)
            finally:
                tmp_art.unlink(missing_ok=True)
                tmp_man.unlink(missing_ok=True)

        return CacheSaveResult(key=key, digest=digest, written=True, files=len(files))

    def prune(self, keep: int = 3, *, prefix: Optional[str] = None) -> List[str]:
        """
        Keep only the newest N entries (optionally only among keys with `prefix`).
        Returns the removed keys.
        """
        entries = [e for e in self.entries() if prefix is None or e.key.startswith(prefix)]
        removed = []
        for entry in entries[keep:]:
            with self._lock(entry.key):
                entry.archive.unlink(missing_ok=True)
                self.manifest_path(entry.key).unlink(missing_ok=True)
            with self._locks_guard:
                self._locks.pop(entry.key, None)
            removed.append(entry.key)
        return removed
