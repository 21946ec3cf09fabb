"""
Bounded in-memory response cache with TTL expiry.

- get(): returns a live CacheEntry or None (expired entries are purged on access)
- put(): stores a body with TTL; oversize bodies are rejected, and when over
  capacity the entries closest to expiry are evicted first
- sweep(): drops every expired entry; run periodically by the sweeper thread

All operations take a single RLock and never perform I/O.
"""
import threading
import logging
import time
from typing import Any, Callable, Dict, Optional

from .core import CacheEntry

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Process-local cache of upstream API responses.

    Usage:
        store = CacheStore(ttl_seconds=600, max_entries=1000, max_body_bytes=1 << 20)
        if store.put(key, body, headers):
            entry = store.get(key)
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        max_body_bytes: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the store.

        Args:
            ttl_seconds: Lifetime of an entry, also the sweep interval
            max_entries: Capacity; never exceeded after a mutation
            max_body_bytes: Largest body accepted by put()
            clock: Monotonic time source, injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.max_body_bytes = max_body_bytes
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

        self._stats = {
            "hits": 0,
            "misses": 0,
            "stored": 0,
            "rejected_size": 0,
            "expired": 0,
            "evictions": 0,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for `key`, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats["expired"] += 1
                self._stats["misses"] += 1
                logger.debug("CACHE EXPIRED: entry dropped on lookup")
                return None
            self._stats["hits"] += 1
            return entry

    def put(
        self,
        key: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """
        Insert or overwrite an entry.

        Returns:
            True if stored, False if the body exceeds max_body_bytes
        """
        size = len(body)
        if size > self.max_body_bytes:
            with self._lock:
                self._stats["rejected_size"] += 1
            logger.info(f"Response not cached due to size: {size} bytes > {self.max_body_bytes}")
            return False

        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                body=body,
                headers=dict(headers or {}),
                expires_at=self._clock() + ttl,
            )
            self._stats["stored"] += 1
            self._evict_locked()
        return True

    def _evict_locked(self) -> None:
        """Drop the soonest-to-expire entries until back within capacity."""
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        victims = sorted(self._entries.values(), key=lambda e: e.expires_at)[:overflow]
        for entry in victims:
            del self._entries[entry.key]
        self._stats["evictions"] += overflow
        logger.info(f"Cleaned {overflow} old cache entries")

    def sweep(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats["expired"] += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            logger.info(f"Cleared {count} cache entries")
            return count

    def start_sweeper(self) -> None:
        """Start the background thread that sweeps every ttl_seconds."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._sweeper_stop.clear()

        def run():
            while not self._sweeper_stop.wait(self.ttl_seconds):
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Cache sweep failed")

        self._sweeper = threading.Thread(target=run, name="cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        """Stop the sweeper thread, if running."""
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            hit_rate = (self._stats["hits"] / lookups * 100) if lookups > 0 else 0
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "max_body_bytes": self.max_body_bytes,
                "ttl_seconds": self.ttl_seconds,
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
            }
