"""Tests for the in-memory resumable event store."""

import anyio
import pytest
from mcp.types import JSONRPCMessage, JSONRPCNotification

from mcp_sessions_http.errors import EventNotFoundError, EventStoreClosedError, StreamNotFoundError
from mcp_sessions_http.event_store import EventStore, InMemoryEventStore


def notification(n: int) -> JSONRPCMessage:
    return JSONRPCMessage(JSONRPCNotification(jsonrpc="2.0", method="notifications/message", params={"n": n}))


class Collector:
    def __init__(self, delay: float = 0.0):
        self.events = []
        self._delay = delay

    async def __call__(self, event):
        if self._delay:
            await anyio.sleep(self._delay)
        self.events.append(event)

    @property
    def cursors(self):
        return [event.cursor for event in self.events]


async def wait_until(predicate, timeout: float = 2.0):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.005)


async def filled_store(count: int, stream_id: str = "s1", seal: bool = False) -> InMemoryEventStore:
    store = InMemoryEventStore()
    await store.create_stream(stream_id)
    for n in range(1, count + 1):
        await store.append(stream_id, notification(n), closes_stream=seal and n == count)
    return store


def test_in_memory_store_satisfies_protocol():
    assert isinstance(InMemoryEventStore(), EventStore)


class TestAppend:
    @pytest.mark.asyncio
    async def test_cursors_start_at_one_and_increase(self):
        store = InMemoryEventStore()
        cursors = [await store.append("s1", notification(n)) for n in range(3)]
        assert cursors == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_cursors_are_never_reused_across_streams(self):
        store = InMemoryEventStore()
        a1 = await store.append("a", notification(1))
        b1 = await store.append("b", notification(2))
        a2 = await store.append("a", notification(3))
        assert (a1, b1, a2) == (1, 2, 3)
        assert store.stream_for_cursor(b1) == "b"
        assert store.stream_for_cursor(a2) == "a"

    @pytest.mark.asyncio
    async def test_create_stream_allocates_unique_ids(self):
        store = InMemoryEventStore()
        first = await store.create_stream()
        second = await store.create_stream()
        assert first != second
        assert store.last_cursor(first) == 0

    @pytest.mark.asyncio
    async def test_create_stream_is_idempotent_for_known_id(self):
        store = await filled_store(2)
        assert await store.create_stream("s1") == "s1"
        assert store.last_cursor("s1") == 2

    @pytest.mark.asyncio
    async def test_sealed_stream_rejects_appends(self):
        store = await filled_store(2, seal=True)
        with pytest.raises(ValueError):
            await store.append("s1", notification(3))


class TestReplay:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("cursor", [0, 1, 3, 5])
    async def test_replay_delivers_events_after_cursor(self, cursor):
        store = await filled_store(5, seal=True)
        sink = Collector()

        await store.replay_from("s1", cursor, sink)

        assert sink.cursors == list(range(cursor + 1, 6))

    @pytest.mark.asyncio
    async def test_replay_skips_other_streams(self):
        store = InMemoryEventStore()
        await store.append("a", notification(1))
        await store.append("b", notification(2))
        await store.append("a", notification(3), closes_stream=True)
        sink = Collector()

        await store.replay_from("a", 1, sink)

        assert sink.cursors == [3]

    @pytest.mark.asyncio
    async def test_replay_then_live(self):
        store = await filled_store(5)
        sink = Collector()

        async with anyio.create_task_group() as tg:
            tg.start_soon(store.replay_from, "s1", 3, sink)
            await wait_until(lambda: len(sink.events) == 2)
            await store.append("s1", notification(6))
            await store.append("s1", notification(7))
            await wait_until(lambda: len(sink.events) == 4)
            store.close()

        assert sink.cursors == [4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_live_only_from_last_cursor(self):
        store = await filled_store(3)
        sink = Collector()

        async with anyio.create_task_group() as tg:
            tg.start_soon(store.replay_from, "s1", store.last_cursor("s1"), sink)
            await anyio.sleep(0.01)
            assert sink.events == []
            await store.append("s1", notification(4))
            await wait_until(lambda: len(sink.events) == 1)
            store.close()

        assert sink.cursors == [4]

    @pytest.mark.asyncio
    async def test_concurrent_appends_during_replay_are_delivered_once_in_order(self):
        store = await filled_store(10)
        sink = Collector(delay=0.001)

        async def produce():
            for n in range(11, 41):
                await store.append("s1", notification(n))
                await anyio.sleep(0)

        async with anyio.create_task_group() as tg:
            tg.start_soon(store.replay_from, "s1", 4, sink)
            tg.start_soon(produce)
            await wait_until(lambda: len(sink.events) == 36)
            store.close()

        assert sink.cursors == list(range(5, 41))

    @pytest.mark.asyncio
    async def test_two_followers_get_the_same_events(self):
        store = await filled_store(2)
        first, second = Collector(), Collector()

        async with anyio.create_task_group() as tg:
            tg.start_soon(store.replay_from, "s1", 0, first)
            tg.start_soon(store.replay_from, "s1", 1, second)
            await store.append("s1", notification(3), closes_stream=True)

        assert first.cursors == [1, 2, 3]
        assert second.cursors == [2, 3]

    @pytest.mark.asyncio
    async def test_sealed_stream_ends_replay(self):
        store = await filled_store(3, seal=True)
        sink = Collector()
        with anyio.fail_after(1):
            await store.replay_from("s1", 0, sink)
        assert sink.cursors == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_unknown_stream_raises_not_found(self):
        store = InMemoryEventStore()
        with pytest.raises(StreamNotFoundError):
            await store.replay_from("missing", 0, Collector())

    @pytest.mark.asyncio
    async def test_negative_cursor_rejected(self):
        store = await filled_store(1)
        with pytest.raises(ValueError):
            await store.replay_from("s1", -1, Collector())

    @pytest.mark.asyncio
    async def test_closed_sink_stops_delivery_quietly(self):
        store = await filled_store(3, seal=True)
        delivered = []

        async def sink(event):
            if event.cursor == 2:
                raise anyio.ClosedResourceError
            delivered.append(event.cursor)

        await store.replay_from("s1", 0, sink)

        assert delivered == [1]

    @pytest.mark.asyncio
    async def test_sink_on_closed_memory_stream(self):
        store = await filled_store(2, seal=True)
        send, receive = anyio.create_memory_object_stream(1)
        await receive.aclose()

        await store.replay_from("s1", 0, send.send)


class TestClose:
    @pytest.mark.asyncio
    async def test_close_stops_followers(self):
        store = await filled_store(2)
        sink = Collector()

        async with anyio.create_task_group() as tg:
            tg.start_soon(store.replay_from, "s1", 0, sink)
            await wait_until(lambda: len(sink.events) == 2)
            store.close()

        assert store.closed
        assert sink.cursors == [1, 2]

    @pytest.mark.asyncio
    async def test_append_after_close_fails(self):
        store = await filled_store(1)
        store.close()
        with pytest.raises(EventStoreClosedError):
            await store.append("s1", notification(2))

    @pytest.mark.asyncio
    async def test_close_releases_logs(self):
        store = await filled_store(2)
        store.close()
        store.close()
        with pytest.raises(StreamNotFoundError):
            store.last_cursor("s1")
        with pytest.raises(EventNotFoundError):
            store.stream_for_cursor(1)


@pytest.mark.asyncio
async def test_reconnect_scenario_replays_missed_events_then_live():
    # Events 1..5 were sent; the client last saw 3 before dropping.
    store = await filled_store(5, stream_id="_GET_stream")
    sink = Collector()

    async with anyio.create_task_group() as tg:
        tg.start_soon(store.replay_from, "_GET_stream", 3, sink)
        await wait_until(lambda: len(sink.events) == 2)
        assert sink.cursors == [4, 5]
        await store.append("_GET_stream", notification(6))
        await wait_until(lambda: len(sink.events) == 3)
        store.close()

    assert sink.cursors == [4, 5, 6]
    assert [event.message.root.params["n"] for event in sink.events] == [4, 5, 6]
