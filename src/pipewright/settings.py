from __future__ import annotations
import os

from .cache import DEFAULT_CACHE_DIR


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str) -> int | None:
    raw = os.environ.get(name)
    return int(raw) if raw and raw.strip() else None


CACHE_DIR = os.environ.get("PIPEWRIGHT_CACHE_DIR", DEFAULT_CACHE_DIR)
MAX_PARALLEL = _int("PIPEWRIGHT_MAX_PARALLEL")  # None -> cpu count - 1
FAIL_FAST = _flag("PIPEWRIGHT_FAIL_FAST", True)
CACHE_KEEP = _int("PIPEWRIGHT_CACHE_KEEP")  # None -> never prune
