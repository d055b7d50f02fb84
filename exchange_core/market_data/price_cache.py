"""
Market Data - Price Cache.

============================================================
PURPOSE
============================================================
Short-TTL memoization of read-only market REST calls.

- Entries are {payload, fetched_at} on a monotonic clock
- One in-flight fetch per key; concurrent callers share it.
  Per-key locks live only while some caller holds or awaits them
- On fetch failure stale data is served (logged, not raised);
  the error propagates only when nothing is cached

============================================================
"""

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    payload: Any
    fetched_at: float


class PriceCache:
    """Keyed TTL cache with single-flight fetches and stale fallback."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _fresh(self, entry: Optional[CacheEntry], ttl_seconds: float) -> bool:
        return entry is not None and self._clock() - entry.fetched_at < ttl_seconds

    async def get(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_seconds: float,
    ) -> Any:
        """
        Cached payload for key, fetching when missing or expired.

        Args:
            key: Request signature (usually the URL)
            fetch: Coroutine factory performing the network call
            ttl_seconds: Freshness window for this call

        Raises:
            Whatever fetch raised, only when no cached payload exists
        """
        entry = self._entries.get(key)
        if self._fresh(entry, ttl_seconds):
            return entry.payload

        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        async with lock:
            entry = self._entries.get(key)
            if self._fresh(entry, ttl_seconds):
                return entry.payload

            try:
                payload = await fetch()
            except Exception as e:
                if entry is None:
                    raise
                age = self._clock() - entry.fetched_at
                logger.warning(f"Serving stale data for {key} (age {age:.1f}s): {e}")
                return entry.payload

            self._entries[key] = CacheEntry(payload=payload, fetched_at=self._clock())
            return payload

    def peek(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry.payload if entry else None

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
