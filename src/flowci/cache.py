# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed key/value cache:
#   key     = caller supplied string, usually "<prefix>-<hashFiles(...)>"
#   payload = raw bytes, or a tar.gz snapshot of files/dirs
#
# Layout:
#   root/
#     <sha256(key)>.json      manifest (key, kind, created_at, size)
#     <sha256(key)>.blob      payload
#
# Identical key => interchangeable payload, so put() is last-writer-wins.
# Lookups never raise on a miss: get()/restore() return None / a miss.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".flowci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".flowci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_ABS_PREFIX = "__abs__"

Payload = Union[bytes, str, Path, Sequence[Union[str, Path]]]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
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


def resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "package-lock.json"
      - dir path:  "src/"
      - glob:      "backend/**", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = Path(pat).expanduser()
        if not p.is_absolute():
            p = root / p
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


def hash_files(root: str | Path, patterns: Sequence[str]) -> str:
    """
    Hash of every file matched by `patterns` under `root`, stable across runs.
    Returns "" when nothing matches.
    """
    base = Path(root).resolve()
    files: List[Tuple[str, Path]] = []
    for p in resolve_globs(base, list(patterns)):
        if p.is_file():
            files.append((str(p.resolve()), p))
        elif p.is_dir():
            files.extend((str(f.resolve()), f) for f in _iter_files_under(p))
    if not files:
        return ""

    h = hashlib.sha256()
    seen = set()
    for name, f in sorted(files, key=lambda t: t[0]):
        if name in seen:
            continue
        seen.add(name)
        h.update(bytes.fromhex(_hash_file_contents(f)))
    return h.hexdigest()


# ---------------------------------------------------------------------
# Snapshots (tar.gz of files/dirs)
# ---------------------------------------------------------------------

def _arcname(path: Path, base: Path) -> str:
    try:
        return _relpath(path, base)
    except ValueError:
        # outside the workspace (e.g. ~/.npm): keep the absolute location
        return f"{_ABS_PREFIX}/{str(path.resolve()).lstrip('/')}"


def _tar_add_path(tar: tarfile.TarFile, base: Path, src: Path, *, exclude_globs: List[str]) -> int:
    """Add src (file/dir) into tar, skipping excluded paths. Returns files added."""
    src = src.resolve()
    if not src.exists():
        return 0

    if src.is_file():
        arc = _arcname(src, base)
        if _matches_any_glob(arc, exclude_globs):
            return 0
        tar.add(str(src), arcname=arc, recursive=False)
        return 1

    added = 0
    for f in _iter_files_under(src):
        arc = _arcname(f, base)
        if _matches_any_glob(arc, exclude_globs):
            continue
        tar.add(str(f), arcname=arc, recursive=False)
        added += 1
    return added


def snapshot(paths: Sequence[str | Path], dest: Path, *, base: str | Path = ".",
             excludes: Optional[List[str]] = None) -> int:
    """Write a tar.gz snapshot of `paths` (relative to `base`) to `dest`. Returns file count."""
    root = Path(base).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    added = 0
    with tarfile.open(str(dest), mode="w:gz") as tar:
        for entry in paths:
            p = Path(entry).expanduser()
            src = p if p.is_absolute() else root / p
            added += _tar_add_path(tar, root, src, exclude_globs=exclude_globs)
    return added


def extract_snapshot(archive: Path, dest: str | Path) -> List[str]:
    """Extract a snapshot made by snapshot(). Returns the restored member names."""
    root = Path(dest).resolve()
    root.mkdir(parents=True, exist_ok=True)
    restored: List[str] = []
    with tarfile.open(str(archive), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            target_root = root
            if member.name.startswith(_ABS_PREFIX + "/"):
                member.name = member.name[len(_ABS_PREFIX) + 1:]
                target_root = Path("/")
            if hasattr(tarfile, "data_filter"):
                tar.extract(member, path=str(target_root), filter="data")
            else:
                tar.extract(member, path=str(target_root))
            restored.append(member.name)
    return restored


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    key: str
    path: Path
    kind: str  # "bytes" | "snapshot"
    created_at: float
    size: int

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def extract_to(self, dest: str | Path) -> List[str]:
        if self.kind != "snapshot":
            raise ValueError(f"Cache entry {self.key!r} holds raw bytes, not a snapshot")
        return extract_snapshot(self.path, dest)


@dataclass(frozen=True)
class CacheHit:
    hit: bool            # something was restored (exact or fallback)
    exact: bool          # the primary key matched
    key: str             # primary key requested
    matched_key: str | None
    reason: str          # human readable
    entry: CacheEntry | None = None


class CacheStore:
    """
    File-based content-addressed cache store.

    Safe for concurrent readers and writers on distinct keys; concurrent
    writes to the same key are last-writer-wins.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _paths(self, key: str) -> Tuple[Path, Path]:
        digest = _sha256_str(key)
        return self.root / f"{digest}.blob", self.root / f"{digest}.json"

    def _load(self, manifest: Path) -> Optional[CacheEntry]:
        try:
            meta = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        blob = manifest.with_suffix(".blob")
        if not blob.exists():
            return None
        return CacheEntry(
            key=meta["key"],
            path=blob,
            kind=meta.get("kind", "bytes"),
            created_at=float(meta.get("created_at", 0.0)),
            size=int(meta.get("size", 0)),
        )

    # ---- core API ----

    def get(self, key: str) -> Optional[CacheEntry]:
        _blob, man = self._paths(key)
        if not man.exists():
            return None
        entry = self._load(man)
        if entry is None or entry.key != key:
            return None
        return entry

    def put(self, key: str, payload: Payload, *, base: str | Path = ".",
            excludes: Optional[List[str]] = None) -> CacheEntry:
        """
        Store `payload` under `key`, overwriting silently.

        payload:
          - bytes                    -> stored as-is
          - path or list of paths    -> tar.gz snapshot (relative to `base`)
        """
        blob, man = self._paths(key)
        tmp_blob = blob.with_name(f"{blob.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            if isinstance(payload, (bytes, bytearray)):
                kind = "bytes"
                tmp_blob.write_bytes(bytes(payload))
            else:
                kind = "snapshot"
                paths = [payload] if isinstance(payload, (str, Path)) else list(payload)
                snapshot(paths, tmp_blob, base=base, excludes=excludes)

            meta = {
                "key": key,
                "kind": kind,
                "created_at": time.time(),
                "size": tmp_blob.stat().st_size,
            }
            with self._lock:
                tmp_blob.replace(blob)
                tmp_man = man.with_suffix(".json.tmp")
                tmp_man.write_text(json.dumps(meta, sort_keys=True, indent=2), encoding="utf-8")
                tmp_man.replace(man)
        finally:
            if tmp_blob.exists():
                tmp_blob.unlink(missing_ok=True)

        logger.debug("cache put %s (%s, %d bytes)", key, meta["kind"], meta["size"])
        return CacheEntry(key=key, path=blob, kind=kind, created_at=meta["created_at"], size=meta["size"])

    def entries(self, prefix: str = "") -> List[CacheEntry]:
        """All entries whose key starts with `prefix`, newest first."""
        out: List[CacheEntry] = []
        for man in self.root.glob("*.json"):
            entry = self._load(man)
            if entry is not None and entry.key.startswith(prefix):
                out.append(entry)
        out.sort(key=lambda e: (e.created_at, e.key), reverse=True)
        return out

    def restore(self, key: str, fallbacks: Sequence[str] = ()) -> CacheHit:
        """
        Restore-then-fallback lookup:
          1. exact primary key
          2. for each fallback in order: exact key, else newest key with that prefix
        """
        entry = self.get(key)
        if entry is not None:
            return CacheHit(True, True, key, entry.key, "cache hit", entry)

        for fb in fallbacks:
            fb = fb.strip()
            if not fb:
                continue
            entry = self.get(fb)
            if entry is None:
                candidates = self.entries(prefix=fb)
                entry = candidates[0] if candidates else None
            if entry is not None:
                return CacheHit(True, False, key, entry.key, f"restored from fallback '{fb}'", entry)

        return CacheHit(False, False, key, None, "cache miss")

    def delete(self, key: str) -> bool:
        blob, man = self._paths(key)
        with self._lock:
            existed = man.exists()
            blob.unlink(missing_ok=True)
            man.unlink(missing_ok=True)
        return existed

    def prune(self, prefix: str = "", keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries matching `prefix`.
        Returns the deleted keys.
        """
        removed: List[str] = []
        for entry in self.entries(prefix)[keep:]:
            self.delete(entry.key)
            removed.append(entry.key)
        return removed

    def describe(self) -> Dict[str, Dict]:
        return {
            e.key: {"kind": e.kind, "size": e.size, "created_at": e.created_at}
            for e in self.entries()
        }
