"""
Time-bounded response cache for registry reads.

Entries carry their own TTL and expire passively: a read past the deadline
removes the entry and reports a miss. Expired entries that are never read
again are swept at most once per ``check_period`` while writing, so no
caller ever waits on a dedicated cleanup pass.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    payload: Any
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now >= self.inserted_at + self.ttl


class ResponseCache:
    """Thread-safe key/value store with per-entry TTL."""

    def __init__(
        self,
        default_ttl: float = 900,
        check_period: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.check_period = check_period
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._next_sweep = clock() + check_period

    def get(self, key: str) -> Any | None:
        """Return the cached payload, or None on a miss or an expired entry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.payload

    def set(self, key: str, payload: Any, ttl: float | None = None) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(
                payload=payload,
                inserted_at=now,
                ttl=self.default_ttl if ttl is None else ttl,
            )
            if now >= self._next_sweep:
                self._sweep_locked(now)

    def invalidate(self, key: str) -> bool:
        """Drop one exact key. Returns True if something was removed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Cache: invalidated %d entries with prefix %r", len(doomed), prefix)
        return len(doomed)

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            doomed = [k for k in self._entries if compiled.search(k)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def sweep(self) -> int:
        """Remove every expired entry now."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.check_period
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)
