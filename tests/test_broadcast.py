from __future__ import annotations

import asyncio

import pytest

from streaming.broadcast import StreamBroadcast
from streaming.errors import StreamBusy, StreamError, SubscriberDropped


async def _queue_source(queue: asyncio.Queue):
    while True:
        item = await queue.get()
        if item is None:
            return
        yield item


async def _drain(subscription) -> list[bytes]:
    return [chunk async for chunk in subscription]


def test_late_subscriber_replays_history_then_follows_live() -> None:
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), label="replay")
        first = broadcast.subscribe()
        broadcast.start()
        await queue.put(b"aa")
        await queue.put(b"bb")
        assert await first.__anext__() == b"aa"
        assert await first.__anext__() == b"bb"

        late = broadcast.subscribe()
        await queue.put(b"cc")
        await queue.put(None)
        return await _drain(late), await _drain(first)

    late, first = asyncio.run(scenario())

    assert late == [b"aa", b"bb", b"cc"]
    assert first == [b"cc"]


def test_stream_past_replay_window_cannot_be_joined() -> None:
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), label="window", replay_limit=4)
        first = broadcast.subscribe()
        broadcast.start()
        await queue.put(b"abc")
        await first.__anext__()
        await queue.put(b"de")
        await first.__anext__()

        assert broadcast.joinable is False
        with pytest.raises(StreamBusy):
            broadcast.subscribe()
        first.close()
        await broadcast.aclose()

    asyncio.run(scenario())


def test_last_subscriber_leaving_stops_producer_before_done_callbacks() -> None:
    events: list[str] = []

    async def closer():
        await asyncio.sleep(0.05)
        events.append("closed")

    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), closer=closer, label="leave")
        broadcast.add_done_callback(lambda: events.append("done"))
        subscription = broadcast.subscribe()
        broadcast.start()
        await queue.put(b"x")
        await subscription.__anext__()

        subscription.close()
        subscription.close()
        await asyncio.sleep(0.2)
        return broadcast

    broadcast = asyncio.run(scenario())

    assert events == ["closed", "done"]
    assert broadcast.finished is True
    assert broadcast.subscribe() is None


def test_single_slow_consumer_gets_backpressure_not_dropped() -> None:
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), label="single", max_chunks=1, stall_timeout=0.05)
        only = broadcast.subscribe()
        broadcast.start()
        for chunk in (b"1", b"2", b"3", None):
            await queue.put(chunk)
        await asyncio.sleep(0.3)
        return await _drain(only)

    assert asyncio.run(scenario()) == [b"1", b"2", b"3"]


def test_stalled_consumer_is_dropped_when_stream_is_shared() -> None:
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), label="shared", max_chunks=1, stall_timeout=0.1)
        reader = broadcast.subscribe()
        stalled = broadcast.subscribe()
        broadcast.start()
        for chunk in (b"1", b"2", b"3", None):
            await queue.put(chunk)
        received = await _drain(reader)
        with pytest.raises(SubscriberDropped):
            await stalled.__anext__()
        return received

    assert asyncio.run(scenario()) == [b"1", b"2", b"3"]


def test_source_failure_is_raised_to_subscribers_and_stops_producer() -> None:
    closed: list[bool] = []

    async def broken_source():
        yield b"first"
        raise RuntimeError("pipe exploded")

    async def closer():
        closed.append(True)

    async def scenario():
        broadcast = StreamBroadcast(broken_source(), closer=closer, label="broken")
        subscription = broadcast.subscribe()
        broadcast.start()
        assert await subscription.__anext__() == b"first"
        with pytest.raises(StreamError):
            await subscription.__anext__()

    asyncio.run(scenario())

    assert closed == [True]


def test_done_callback_added_after_finish_runs_immediately() -> None:
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), label="finished")
        subscription = broadcast.subscribe()
        broadcast.start()
        await queue.put(None)
        await _drain(subscription)
        calls: list[int] = []
        broadcast.add_done_callback(lambda: calls.append(1))
        return calls

    assert asyncio.run(scenario()) == [1]


def test_consumer_stalled_before_a_second_joins_is_dropped() -> None:
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        broadcast = StreamBroadcast(_queue_source(queue), label="late-join", max_chunks=1, stall_timeout=0.1)
        paused = broadcast.subscribe()
        broadcast.start()
        await queue.put(b"a")
        await queue.put(b"b")
        await asyncio.sleep(0.05)

        viewer = broadcast.subscribe()
        await queue.put(b"c")
        received = [await asyncio.wait_for(viewer.__anext__(), timeout=1.0) for _ in range(3)]
        with pytest.raises(SubscriberDropped):
            await paused.__anext__()
        viewer.close()
        await broadcast.aclose()
        return received

    assert asyncio.run(scenario()) == [b"a", b"b", b"c"]
