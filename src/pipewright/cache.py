# cache.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .errors import CacheUnavailable

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Key-addressed caching:
#   the caller builds the key (job template + matrix + clock), the store
#   only maps key -> archived copy of one path.
#
# Cache artifact:
#   a tar.gz holding the cached path (file or directory) under its base name,
#   plus a manifest.json for explainability.
#
# Staleness is encoded in the key (e.g. `${{ vars.yyyymm }}`), so the store
# never expires anything on its own. `prune` is explicit eviction.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".pipewright/cache"
ARTIFACT = "artifact.tar.gz"
MANIFEST = "manifest.json"


def month_bucket(now: Optional[datetime] = None) -> str:
    """UTC year-month bucket (YYYYMM) for monthly-refreshed cache keys."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y%m")


def _digest(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def resolve_path(path: str | Path, root: str | Path = ".") -> Path:
    """Expand `~` and anchor relative paths at the workspace root."""
    p = Path(os.path.expanduser(str(path)))
    if not p.is_absolute():
        p = Path(root) / p
    return p.resolve()


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    artifact: Optional[Path] = None
    manifest: Dict = field(default_factory=dict)


class CacheStore:
    """
    File-based cache store:
      root/
        <sha256(key)>/
          artifact.tar.gz
          manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _entry_dir(self, key: str) -> Path:
        return self.root / _digest(key)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def artifact_path(self, key: str) -> Path:
        return self._entry_dir(key) / ARTIFACT

    def manifest_path(self, key: str) -> Path:
        return self._entry_dir(key) / MANIFEST

    def lookup(self, key: str) -> CacheHit:
        if not key:
            return CacheHit(hit=False, key=key, reason="empty cache key")

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        try:
            if not art.is_file() or not man.is_file():
                return CacheHit(hit=False, key=key, reason="cache miss")
            manifest = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheUnavailable(f"cache lookup failed for '{key}': {e}") from e

        return CacheHit(hit=True, key=key, reason="cache hit", artifact=art, manifest=manifest)

    def restore(self, hit: CacheHit, path: str | Path, *, root: str | Path = ".") -> Path:
        """
        Restore a hit onto `path` (relative to `root`).

        Restore is "overwrite by extraction": the archived entry is extracted
        next to the target and replaces whatever has the same name.
        """
        if not hit.hit or hit.artifact is None:
            raise CacheUnavailable(f"nothing to restore for '{hit.key}'")

        target = resolve_path(path, root)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(str(hit.artifact), mode="r:gz") as tar:
                members = tar.getmembers()
                for m in members:
                    top = m.name.split("/", 1)[0]
                    if top != target.name:
                        raise CacheUnavailable(f"unexpected entry '{m.name}' in cache artifact for '{hit.key}'")
                tar.extractall(path=str(target.parent), members=members, filter="data")
        # TypeError: interpreters without the extraction filter backport
        except (OSError, tarfile.TarError, TypeError) as e:
            raise CacheUnavailable(f"cache exists but restore failed: {e}") from e
        return target

    def save(self, key: str, path: str | Path, *, root: str | Path = ".") -> Dict:
        """
        Archive `path` under `key`. Returns the manifest.

        Concurrent saves of the same key are serialized; the last one wins.
        """
        if not key:
            raise CacheUnavailable("empty cache key")

        src = resolve_path(path, root)
        if not src.exists():
            raise CacheUnavailable(f"cache path does not exist: {src}")

        manifest = {
            "key": key,
            "path": str(path),
            "resolved_path": str(src),
            "saved_at_unix": int(time.time()),
        }

        with self._lock_for(key):
            entry = self._entry_dir(key)
            art = entry / ARTIFACT
            tmp = entry / f"{ARTIFACT}.{threading.get_ident()}.tmp"
            try:
                entry.mkdir(parents=True, exist_ok=True)
                # Build tar.gz in tmp, then atomic rename
                with tarfile.open(str(tmp), mode="w:gz") as tar:
                    tar.add(str(src), arcname=src.name, recursive=True)
                tmp.replace(art)
                payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False)
                (entry / MANIFEST).write_text(payload, encoding="utf-8")
            except (OSError, tarfile.TarError) as e:
                raise CacheUnavailable(f"cache save failed for '{key}': {e}") from e
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)

        return manifest

    def entries(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return [d for d in self.root.iterdir() if (d / ARTIFACT).is_file()]

    def prune(self, keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries.
        Uses artifact mtime as "newest". Returns the evicted keys.
        """
        entries = sorted(self.entries(), key=lambda d: (d / ARTIFACT).stat().st_mtime, reverse=True)
        evicted: List[str] = []
        for d in entries[max(keep, 0):]:
            try:
                manifest = json.loads((d / MANIFEST).read_text(encoding="utf-8"))
                evicted.append(str(manifest.get("key", d.name)))
            except (OSError, ValueError):
                evicted.append(d.name)
            shutil.rmtree(d, ignore_errors=True)
        return evicted


def describe(hit: CacheHit) -> str:
    if hit.hit and hit.manifest.get("saved_at_unix"):
        saved = datetime.fromtimestamp(hit.manifest["saved_at_unix"], tz=timezone.utc)
        return f"{hit.reason} (saved {saved:%Y-%m-%d %H:%M} UTC)"
    return hit.reason
