from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]


@dataclass
class _Entry:
    value: Any = None
    has_value: bool = False
    stale: bool = True
    fetched_at: float = 0.0
    # bumped on every invalidation; a load started under an older generation
    # must not mark the entry fresh
    generation: int = 0
    inflight: "asyncio.Future[Any] | None" = None
    inflight_generation: int = -1


class QueryCache:
    """Keyed query results with push invalidation.

    ``fetch`` serves fresh entries, otherwise runs the loader once per key even
    under concurrent callers. ``invalidate`` only marks entries stale; the next
    ``fetch`` pulls fresh data. Entries also go stale after ``ttl_seconds``.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry) -> bool:
        return self.ttl_seconds > 0 and (self._clock() - entry.fetched_at) >= self.ttl_seconds

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale or not entry.has_value or self._expired(entry)

    def peek(self, key: CacheKey) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry and entry.has_value else None

    async def fetch(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.setdefault(key, _Entry())
        if not self.is_stale(key):
            return entry.value
        if entry.inflight is None or entry.inflight_generation != entry.generation:
            generation = entry.generation
            # the load is its own task; cancelling one caller leaves it running for the rest
            task = asyncio.ensure_future(loader())
            entry.inflight = task
            entry.inflight_generation = generation
            task.add_done_callback(lambda t: self._settle(key, entry, t, generation))
        return await asyncio.shield(entry.inflight)

    def _settle(self, key: CacheKey, entry: _Entry, task: "asyncio.Future[Any]", generation: int) -> None:
        if entry.inflight is task:
            entry.inflight = None
        if task.cancelled() or task.exception() is not None:
            return
        if entry.generation != generation:
            logger.debug("discarding superseded load for %r", key)
            return
        entry.value = task.result()
        entry.has_value = True
        entry.stale = False
        entry.fetched_at = self._clock()

    def invalidate(self, prefix: CacheKey = ()) -> int:
        """Mark every entry whose key starts with ``prefix`` stale."""
        n = len(prefix)
        count = 0
        for key, entry in self._entries.items():
            if key[:n] == prefix:
                entry.stale = True
                entry.generation += 1
                count += 1
        if count:
            logger.debug("invalidated %d cache entries under %r", count, prefix)
        return count

    def invalidate_all(self) -> int:
        return self.invalidate(())

    def evict_expired(self) -> int:
        """Drop entries that are stale and idle; returns the number removed."""
        dead = [
            k for k, e in self._entries.items()
            if e.inflight is None and (e.stale or self._expired(e))
        ]
        for k in dead:
            del self._entries[k]
        return len(dead)
