import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

from app.vars import CACHE_MAX_ITEM_SIZE, CACHE_MAX_SIZE, CACHE_TTL

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class CacheEntry:
    payload: bytes
    content_type: str
    stored_at: float
    # Upstream URL the payload was served from after redirects; relative
    # references inside cached CSS/SVG resolve against it.
    source_url: str = ""
    # Relayable upstream response headers, replayed on a hit
    headers: dict = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.payload)


class ContentCache:
    """
    Bounded, TTL-based store of upstream payloads keyed by absolute URL.

    Eviction on overflow is by insertion order (oldest first), not by access
    recency. All operations take a single lock, so ``size_bytes`` always
    equals the sum of the resident payload sizes.
    """

    def __init__(
        self,
        max_size: int = CACHE_MAX_SIZE,
        max_item_size: int = CACHE_MAX_ITEM_SIZE,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.max_item_size = max_item_size
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._size_bytes = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def size_bytes(self) -> int:
        with self._lock:
            return self._size_bytes

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at > self.ttl

    def _remove(self, url: str) -> None:
        entry = self._entries.pop(url)
        self._size_bytes -= entry.size

    def get(self, url: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            if self._is_expired(entry, self._clock()):
                self._remove(url)
                logger.debug(f"[Cache] Expired entry dropped: {url}")
                return None
            return entry

    def put(
        self,
        url: str,
        payload: bytes,
        content_type: str,
        source_url: str = "",
        headers: Optional[dict] = None,
    ) -> bool:
        """Store a payload. Returns False when it exceeds the per-item ceiling."""
        size = len(payload)
        if size > self.max_item_size or size > self.max_size:
            logger.debug(
                f"[Cache] Not caching {url}: {size} bytes exceeds item limit {self.max_item_size}"
            )
            return False

        with self._lock:
            if url in self._entries:
                self._remove(url)
            while self._entries and self._size_bytes + size > self.max_size:
                evicted_url, evicted = self._entries.popitem(last=False)
                self._size_bytes -= evicted.size
                logger.debug(f"[Cache] Evicted {evicted_url} ({evicted.size} bytes)")
            self._entries[url] = CacheEntry(
                payload=payload,
                content_type=content_type,
                stored_at=self._clock(),
                source_url=source_url or url,
                headers=dict(headers or {}),
            )
            self._size_bytes += size
        return True

    def sweep_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [
                url for url, entry in self._entries.items() if self._is_expired(entry, now)
            ]
            for url in expired:
                self._remove(url)
        if expired:
            logger.debug(f"[Cache] Swept {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size_bytes = 0

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "size_bytes": self._size_bytes,
                "max_size_bytes": self.max_size,
            }
