from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import fields, is_dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from hydrowatch.models import CacheEntry

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]

DEFAULT_TTL_SECONDS = 60 * 60


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def approx_size(obj: Any, _seen: Optional[set[int]] = None) -> int:
    """Rough deep size of obj in bytes (containers and dataclasses are walked)."""
    seen = _seen if _seen is not None else set()
    if id(obj) in seen:
        return 0
    seen.add(id(obj))
    size = sys.getsizeof(obj)
    if isinstance(obj, dict):
        size += sum(approx_size(k, seen) + approx_size(v, seen) for k, v in obj.items())
    elif isinstance(obj, (list, tuple, set, frozenset)):
        size += sum(approx_size(v, seen) for v in obj)
    elif is_dataclass(obj) and not isinstance(obj, type):
        size += sum(approx_size(getattr(obj, f.name), seen) for f in fields(obj))
    return size


def _human_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / 1024 / 1024:.1f} MB"


class TTLCache:
    """Key -> payload cache in front of async fetch functions.

    A payload younger than its ttl is served without fetching. When a fetch
    fails, the last payload for the key is served even if expired; only when
    there is none does the error reach the caller. Expired entries stay until
    cleanup_expired() or clear() removes them.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._loaders: dict[str, tuple[FetchFn, float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.hits = 0
        self.misses = 0
        self.fetches = 0
        self.last_fetch: Optional[float] = None

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @property
    def registered_keys(self) -> list[str]:
        return list(self._loaders)

    def register(self, key: str, fetch_fn: FetchFn, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        """Remember how to (re)load key, for refresh() and refresh_all()."""
        self._loaders[key] = (fetch_fn, ttl)

    async def get_or_fetch(self, key: str, fetch_fn: FetchFn, ttl: float = DEFAULT_TTL_SECONDS) -> Any:
        self.register(key, fetch_fn, ttl)
        async with self._lock_for(key):
            cached = self._entries.get(key)
            now = self._clock()
            if cached is not None and cached.age(now) < ttl:
                self.hits += 1
                logger.debug("Cache HIT for %s (age %.0fs)", key, cached.age(now))
                return cached.payload

            self.misses += 1
            self.fetches += 1
            self.last_fetch = now
            logger.debug("Cache MISS for %s, fetching", key)
            try:
                payload = await fetch_fn()
            except Exception:
                if cached is None:
                    raise
                logger.exception("Fetch for %s failed, serving stale payload from %s",
                                 key, _iso(cached.fetched_at))
                return cached.payload

            self._entries[key] = CacheEntry(key=key, payload=payload, fetched_at=self._clock(), ttl=ttl)
            logger.info("Cached %s (ttl %.0fs)", key, ttl)
            return payload

    async def refresh(self, key: str) -> Any:
        """Evict key and fetch it again with its registered loader."""
        if key not in self._loaders:
            raise KeyError(key)
        fetch_fn, ttl = self._loaders[key]
        self.invalidate(key)
        return await self.get_or_fetch(key, fetch_fn, ttl)

    async def refresh_all(self, keys: Iterable[str] | None = None) -> dict[str, bool]:
        """Refresh each key independently. Returns key -> success."""
        results: dict[str, bool] = {}
        for key in list(keys if keys is not None else self._loaders):
            try:
                await self.refresh(key)
                results[key] = True
            except Exception:
                logger.exception("Refresh of %s failed", key)
                results[key] = False
        return results

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        n = len(self._entries)
        self._entries.clear()
        logger.info("Cleared %d cache entries", n)
        return n

    def expired_keys(self) -> list[str]:
        now = self._clock()
        return [k for k, e in self._entries.items() if not e.is_fresh(now)]

    def cleanup_expired(self) -> int:
        """Evict entries whose age >= ttl. Returns the number evicted."""
        expired = self.expired_keys()
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Cleaned up %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> dict:
        entries = list(self._entries.values())
        oldest = min(entries, key=lambda e: e.fetched_at, default=None)
        newest = max(entries, key=lambda e: e.fetched_at, default=None)
        next_expiry = min((e.fetched_at + e.ttl for e in entries), default=None)
        size = sum(approx_size(e.key) + approx_size(e.payload) for e in entries)
        return {
            "total_entries": len(entries),
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "fetches": self.fetches,
            "last_fetch": _iso(self.last_fetch),
            "size_bytes": size,
            "cache_size": _human_size(size),
            "oldest_entry": _iso(oldest.fetched_at) if oldest else None,
            "newest_entry": _iso(newest.fetched_at) if newest else None,
            "next_expiry": _iso(next_expiry),
        }
