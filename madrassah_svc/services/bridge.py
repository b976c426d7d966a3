"""Realtime change bridge: change feed events -> query cache invalidation.

The bridge never hands changed rows to readers; it only marks dependent cache
entries stale so the next read pulls fresh data.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Protocol, Sequence

from .cache import CacheKey, QueryCache

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ALL_CHANGES: frozenset[ChangeType] = frozenset(ChangeType)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: ChangeType
    record: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "event_type": self.event_type.value, "record": self.record}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=str(data["table"]),
            event_type=ChangeType(str(data["event_type"]).lower()),
            record=dict(data.get("record") or {}),
        )


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class ChangeFeed(Protocol):
    async def subscribe(self, table: str, handler: ChangeHandler) -> Any: ...
    async def unsubscribe(self, handle: Any) -> None: ...
    async def publish(self, event: ChangeEvent) -> None: ...

    @property
    def is_connected(self) -> bool: ...


class LocalChangeFeed:
    """In-process feed; used when NATS is disabled and in tests."""

    def __init__(self) -> None:
        self._subs: Dict[int, tuple[str, ChangeHandler]] = {}
        self._ids = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return True

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    async def subscribe(self, table: str, handler: ChangeHandler) -> int:
        sid = next(self._ids)
        self._subs[sid] = (table, handler)
        return sid

    async def unsubscribe(self, handle: int) -> None:
        self._subs.pop(handle, None)

    async def publish(self, event: ChangeEvent) -> None:
        for table, handler in list(self._subs.values()):
            if table != event.table:
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("change handler for %s failed", table)


KeyBuilder = Callable[[ChangeEvent], Iterable[CacheKey]]


@dataclass(frozen=True)
class Watch:
    """Cache key prefixes that depend on a table.

    With ``match_field`` set the watch only fires for records whose field
    equals the bound user id (e.g. messages addressed to that user).
    """

    table: str
    keys: KeyBuilder
    events: frozenset[ChangeType] = ALL_CHANGES
    match_field: str | None = None

    def applies(self, event: ChangeEvent, user_id: str) -> bool:
        if event.table != self.table or event.event_type not in self.events:
            return False
        if self.match_field is None:
            return True
        return str(event.record.get(self.match_field)) == user_id


class ChangeBridge:
    def __init__(self, feed: ChangeFeed, cache: QueryCache, watches: Sequence[Watch]):
        self.feed = feed
        self.cache = cache
        self.watches = list(watches)
        self.user_id: str | None = None
        self._handles: List[Any] = []
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._consumer: asyncio.Task | None = None
        self.processed = 0

    @property
    def is_bound(self) -> bool:
        return self.user_id is not None

    async def bind(self, user_id: str | None) -> None:
        """Subscribe for ``user_id``, fully replacing any previous subscription."""
        await self.unbind()
        if not user_id:
            return
        self.user_id = str(user_id)
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(self._queue), name=f"change-bridge:{self.user_id}")
        queue = self._queue
        for table in sorted({w.table for w in self.watches}):
            try:
                handle = await self.feed.subscribe(table, self._make_handler(queue))
            except Exception:
                logger.exception("change feed subscription for %s failed; falling back to refresh interval", table)
                continue
            self._handles.append(handle)

    async def unbind(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            try:
                await self.feed.unsubscribe(handle)
            except Exception:
                logger.exception("change feed unsubscribe failed")
        consumer, self._consumer = self._consumer, None
        queue, self._queue = self._queue, None
        if consumer is not None:
            if queue is not None:
                # let already-delivered events invalidate before shutting down
                await queue.join()
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        self.user_id = None

    @asynccontextmanager
    async def bound(self, user_id: str | None) -> AsyncIterator["ChangeBridge"]:
        await self.bind(user_id)
        try:
            yield self
        finally:
            await self.unbind()

    async def drain(self) -> None:
        """Wait until every delivered event has been applied."""
        if self._queue is not None:
            await self._queue.join()

    def _make_handler(self, queue: asyncio.Queue[ChangeEvent]) -> ChangeHandler:
        async def handler(event: ChangeEvent) -> None:
            queue.put_nowait(event)
        return handler

    async def _consume(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                self.apply(event)
            except Exception:
                logger.exception("failed to apply change event on %s", event.table)
            finally:
                queue.task_done()

    def apply(self, event: ChangeEvent) -> int:
        if self.user_id is None:
            return 0
        count = 0
        for watch in self.watches:
            if not watch.applies(event, self.user_id):
                continue
            for prefix in watch.keys(event):
                count += self.cache.invalidate(tuple(prefix))
        self.processed += 1
        logger.debug("%s on %s invalidated %d entries", event.event_type.value, event.table, count)
        return count
