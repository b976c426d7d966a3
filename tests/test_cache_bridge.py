import asyncio

import pytest

from madrassah_svc.services.bridge import ChangeBridge, ChangeEvent, ChangeType, LocalChangeFeed, Watch
from madrassah_svc.services.cache import QueryCache

pytestmark = pytest.mark.anyio


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def counting_loader(values):
    calls = []

    async def load():
        calls.append(1)
        return values[len(calls) - 1]
    return load, calls


async def test_fresh_entries_are_served_from_cache():
    cache = QueryCache()
    load, calls = counting_loader(["v1", "v2"])
    assert await cache.fetch(("k",), load) == "v1"
    assert await cache.fetch(("k",), load) == "v1"
    assert len(calls) == 1


async def test_invalidate_by_prefix():
    cache = QueryCache()
    load_a, _ = counting_loader(["a1", "a2"])
    load_b, _ = counting_loader(["b1", "b2"])
    await cache.fetch(("inbox", "u1", 50), load_a)
    await cache.fetch(("sent", "u1", 50), load_b)
    assert cache.invalidate(("inbox", "u1")) == 1
    assert cache.is_stale(("inbox", "u1", 50))
    assert not cache.is_stale(("sent", "u1", 50))
    assert await cache.fetch(("inbox", "u1", 50), load_a) == "a2"


async def test_ttl_expiry():
    clock = Clock()
    cache = QueryCache(ttl_seconds=10, clock=clock)
    load, calls = counting_loader(["v1", "v2"])
    await cache.fetch(("k",), load)
    clock.now = 11
    assert cache.is_stale(("k",))
    assert await cache.fetch(("k",), load) == "v2"


async def test_concurrent_fetches_share_one_load():
    cache = QueryCache()
    gate = asyncio.Event()
    calls = []

    async def load():
        calls.append(1)
        await gate.wait()
        return "v"

    tasks = [asyncio.ensure_future(cache.fetch(("k",), load)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    assert await asyncio.gather(*tasks) == ["v", "v", "v"]
    assert len(calls) == 1


async def test_cancelled_caller_leaves_shared_load_running():
    cache = QueryCache()
    gate = asyncio.Event()
    calls = []

    async def slow():
        calls.append(1)
        await gate.wait()
        return "v"

    first = asyncio.ensure_future(cache.fetch(("k",), slow))
    second = asyncio.ensure_future(cache.fetch(("k",), slow))
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.sleep(0)
    gate.set()
    assert await second == "v"
    assert first.cancelled()
    assert len(calls) == 1
    assert cache.peek(("k",)) == "v" and not cache.is_stale(("k",))


async def test_load_finishes_after_every_caller_is_cancelled():
    cache = QueryCache()
    gate = asyncio.Event()
    load, calls = counting_loader(["v", "unused"])

    async def slow():
        await gate.wait()
        return await load()

    caller = asyncio.ensure_future(cache.fetch(("k",), slow))
    await asyncio.sleep(0)
    caller.cancel()
    gate.set()
    assert await cache.fetch(("k",), slow) == "v"
    assert len(calls) == 1


async def test_load_superseded_by_invalidation_stays_stale():
    cache = QueryCache()
    gate = asyncio.Event()

    async def slow():
        await gate.wait()
        return "old"

    task = asyncio.ensure_future(cache.fetch(("k",), slow))
    await asyncio.sleep(0)
    cache.invalidate(("k",))
    gate.set()
    assert await task == "old"
    assert cache.is_stale(("k",))


async def test_loader_errors_are_not_cached():
    cache = QueryCache()

    async def broken():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await cache.fetch(("k",), broken)

    async def ok():
        return "v"
    assert await cache.fetch(("k",), ok) == "v"


def message_watches():
    return [
        Watch("messages", keys=lambda e: [("inbox",)], match_field="recipient_id"),
        Watch("activity_records", keys=lambda e: [("leaderboard",)], events=frozenset({ChangeType.INSERT})),
    ]


async def test_change_event_invalidates_dependent_view():
    feed = LocalChangeFeed()
    cache = QueryCache()
    bridge = ChangeBridge(feed, cache, message_watches())
    load, _ = counting_loader(["before", "after"])
    async with bridge.bound("u1"):
        assert await cache.fetch(("inbox",), load) == "before"
        await feed.publish(ChangeEvent("messages", ChangeType.INSERT, {"recipient_id": "u1"}))
        await bridge.drain()
        assert cache.is_stale(("inbox",))
        assert bridge.processed == 1
        assert await cache.fetch(("inbox",), load) == "after"


async def test_match_field_filters_other_users_events():
    feed = LocalChangeFeed()
    cache = QueryCache()
    bridge = ChangeBridge(feed, cache, message_watches())
    load, _ = counting_loader(["v"])
    async with bridge.bound("u1"):
        await cache.fetch(("inbox",), load)
        await feed.publish(ChangeEvent("messages", ChangeType.INSERT, {"recipient_id": "someone-else"}))
        await bridge.drain()
        assert not cache.is_stale(("inbox",))
        assert bridge.processed == 1


async def test_event_type_filter():
    feed = LocalChangeFeed()
    cache = QueryCache()
    bridge = ChangeBridge(feed, cache, message_watches())
    load, _ = counting_loader(["v"])
    async with bridge.bound("u1"):
        await cache.fetch(("leaderboard",), load)
        await feed.publish(ChangeEvent("activity_records", ChangeType.DELETE, {}))
        await bridge.drain()
        assert not cache.is_stale(("leaderboard",))


async def test_rebind_replaces_subscriptions():
    feed = LocalChangeFeed()
    bridge = ChangeBridge(feed, QueryCache(), message_watches())
    await bridge.bind("u1")
    first = feed.subscription_count
    await bridge.bind("u2")
    await bridge.bind("u2")
    assert feed.subscription_count == first == 2
    assert bridge.user_id == "u2"
    await bridge.unbind()
    assert feed.subscription_count == 0 and not bridge.is_bound


async def test_bind_without_user_is_a_noop():
    feed = LocalChangeFeed()
    bridge = ChangeBridge(feed, QueryCache(), message_watches())
    await bridge.bind(None)
    await bridge.bind("")
    assert feed.subscription_count == 0


async def test_change_event_wire_format():
    evt = ChangeEvent.from_dict({"table": "messages", "event_type": "UPDATE", "record": {"id": "1"}})
    assert evt.event_type is ChangeType.UPDATE
    assert ChangeEvent.from_dict(evt.to_dict()) == evt
