"""Report cache port and its in-memory TTL implementation."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

DEFAULT_TTL_SECONDS = 300


def params_hash(params: dict[str, Any]) -> str:
    """Stable hash of report parameters (key order does not matter)."""
    canonical = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def make_cache_key(kind: str, params: dict[str, Any]) -> str:
    """Cache key for a report: ``<kind>:<params hash>``."""
    return f"{kind}:{params_hash(params)}"


class ReportCache(Protocol):
    """Cache used by read-only reports.

    Values may be stale by up to their TTL; nothing invalidates them on
    claim writes.
    """

    def get_or_set(self, key: str, ttl_seconds: int, factory: Callable[[], Any]) -> Any:
        ...

    def clear(self) -> None:
        ...


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLReportCache:
    """Thread-safe in-process cache with per-entry expiry."""

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._entries[key] = _Entry(value=value, expires_at=now + ttl)

    def _prune(self, now: float) -> None:
        """Drop expired entries. Caller holds the lock."""
        expired = [k for k, entry in self._entries.items() if entry.expires_at <= now]
        for k in expired:
            del self._entries[k]

    def get_or_set(self, key: str, ttl_seconds: int, factory: Callable[[], Any]) -> Any:
        """Return the cached value, building and storing it on a miss."""
        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        value = factory()
        self.set(key, value, ttl_seconds)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class NullReportCache:
    """Cache that never stores anything."""

    def get_or_set(self, key: str, ttl_seconds: int, factory: Callable[[], Any]) -> Any:
        return factory()

    def clear(self) -> None:
        pass
