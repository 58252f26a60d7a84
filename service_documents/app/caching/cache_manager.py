"""
In-process response cache for the Document Gateway.

Keys follow ``"<database>/<collection>[:<query-signature>]"`` so that a write
on a collection can evict every cached view of it with a single prefix
invalidation.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from shared.logging import get_logger


DEFAULT_TTL_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 600


@dataclass
class CacheEntry:
    """Cached payload with absolute expiry (epoch seconds)."""
    data: Any
    expiry: float
    created_at: str


@dataclass
class StaleRead:
    """Entry returned by ``get_stale`` regardless of expiry."""
    data: Any
    expiry: float
    created_at: str
    is_expired: bool

    @property
    def expiry_iso(self) -> str:
        return datetime.fromtimestamp(self.expiry, tz=timezone.utc).isoformat()


class CacheManager:
    """Thread-safe TTL cache with prefix invalidation and stale reads."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        ttl_rules: Optional[Mapping[str, float]] = None,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.default_ttl = default_ttl
        self.ttl_rules: Dict[str, float] = dict(ttl_rules or {})
        self.sweep_interval = sweep_interval
        self.logger = get_logger("documents.cache_manager")
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def resolve_ttl(self, key: str) -> float:
        """Return the TTL for ``key``: the longest matching prefix rule, else the default."""
        matches = [prefix for prefix in self.ttl_rules if key.startswith(prefix)]
        if not matches:
            return self.default_ttl
        return self.ttl_rules[max(matches, key=len)]

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired.

        Unlike a lazily-expiring cache, an expired entry is not dropped here: it
        stays in place so ``get_stale`` can still serve it when the datastore is
        down, until the sweep, ``cleanup``, an overwrite or an invalidation
        removes it.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() > entry.expiry:
                return None
            return entry.data

    def get_stale(self, key: str) -> Optional[StaleRead]:
        """Return the entry even if it has expired; used for degraded reads only."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return StaleRead(
                data=entry.data,
                expiry=entry.expiry,
                created_at=entry.created_at,
                is_expired=self._clock() > entry.expiry,
            )

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or overwrite ``key``.

        A ``ttl`` of None or 0 means the TTL resolved from the key's prefix rules.
        """
        effective_ttl = ttl if ttl else self.resolve_ttl(key)
        now = self._clock()
        entry = CacheEntry(
            data=value,
            expiry=now + effective_ttl,
            created_at=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        )
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        self.logger.info("Cache cleared", entries=count)
        return count

    def invalidate_pattern(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``; return how many."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        self.logger.info("Cache invalidated", pattern=prefix, entries=len(doomed))
        return len(doomed)

    def cleanup(self) -> int:
        """Remove all expired entries; return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expiry]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.debug("Expired cache entries swept", entries=len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Diagnostic snapshot of the cache."""
        now = self._clock()
        with self._lock:
            keys: List[str] = list(self._entries.keys())
            expired = sum(1 for entry in self._entries.values() if now > entry.expiry)
        return {
            "totalEntries": len(keys),
            "validEntries": len(keys) - expired,
            "expiredEntries": expired,
            "keys": keys,
        }

    async def start(self) -> None:
        """Start the periodic expired-entry sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            self.logger.info("Cache sweep started", interval_seconds=self.sweep_interval)

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            self.logger.info("Cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.cleanup()
            except Exception as e:
                self.logger.error("Error in cache sweep", error=str(e))
