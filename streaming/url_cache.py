"""Short-lived cache of direct media URLs keyed by source reference."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

DEFAULT_TTL_SECONDS = 2 * 60 * 60.0
DEFAULT_MAX_ENTRIES = 1024


@dataclass(frozen=True)
class CacheEntry:
    direct_url: str
    extracted_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class URLCache:
    """In-memory map of source reference to direct URL with a fixed TTL.

    Entries are immutable and replaced wholesale by ``put``. Expired entries
    are evicted on read. When ``max_entries`` is reached the entry closest to
    expiry is evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        max_entries: int | None = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}

    def get(self, source_ref: str) -> str | None:
        entry = self.get_entry(source_ref)
        return entry.direct_url if entry is not None else None

    def get_entry(self, source_ref: str) -> CacheEntry | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(source_ref)
            if entry is None:
                return None
            if entry.is_expired(now):
                self._entries.pop(source_ref, None)
                return None
            return entry

    def put(self, source_ref: str, direct_url: str) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(direct_url=direct_url, extracted_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            self._entries.pop(source_ref, None)
            if self.max_entries is not None and len(self._entries) >= self.max_entries:
                self._purge_expired_locked(now)
                while self._entries and len(self._entries) >= self.max_entries:
                    oldest = min(self._entries, key=lambda key: self._entries[key].expires_at)
                    self._entries.pop(oldest, None)
            self._entries[source_ref] = entry
        return entry

    def invalidate(self, source_ref: str) -> bool:
        with self._lock:
            return self._entries.pop(source_ref, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._purge_expired_locked(now)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)
