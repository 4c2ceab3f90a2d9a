"""Version-keyed cache for read computations.

Keys are SHA256 hashes of canonical JSON over (evaluation_id, version,
operation, args). The version is the evaluation's mutation counter, so any
score submit, consensus lock, weight change or lock transition makes older
entries unreachable; they are evicted when a newer version is stored.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


def compute_cache_key(evaluation_id: str, version: int, operation: str, args: Any = None) -> str:
    """Deterministic key; args must be JSON-serialisable."""
    canonical = json.dumps(
        {"evaluation_id": evaluation_id, "version": version, "operation": operation, "args": args},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResultCache:
    """In-memory cache with per-evaluation version eviction."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._entries: dict[str, tuple[str, int, Any]] = {}
        self._latest: dict[str, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(self, evaluation_id: str, version: int, operation: str, args: Any = None) -> Any:
        """Return the cached value, or None on a miss."""
        if not self._enabled:
            return None
        key = compute_cache_key(evaluation_id, version, operation, args)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry[2]

    def put(
        self, evaluation_id: str, version: int, operation: str, args: Any, value: Any
    ) -> None:
        if not self._enabled:
            return
        key = compute_cache_key(evaluation_id, version, operation, args)
        with self._lock:
            if version > self._latest.get(evaluation_id, -1):
                self._evict_older(evaluation_id, version)
                self._latest[evaluation_id] = version
            self._entries[key] = (evaluation_id, version, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._latest.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_older(self, evaluation_id: str, version: int) -> None:
        stale = [
            k for k, (e, v, _) in self._entries.items() if e == evaluation_id and v < version
        ]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.debug(
                "Evicted %d cache entries for %s below v%d", len(stale), evaluation_id, version
            )
