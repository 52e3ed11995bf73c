from __future__ import annotations

import asyncio

from streaming.broadcast import StreamBroadcast
from streaming.errors import ExtractionFailed
from streaming.registry import StreamRegistry


async def _gated_source(gate: asyncio.Event, chunks: list[bytes]):
    await gate.wait()
    for chunk in chunks:
        yield chunk


async def _drain(subscription) -> bytes:
    return b"".join([chunk async for chunk in subscription])


def test_concurrent_requests_share_one_creation() -> None:
    calls: list[str] = []

    async def scenario():
        registry = StreamRegistry()
        gate = asyncio.Event()

        async def create():
            calls.append("create")
            await asyncio.sleep(0.05)
            return StreamBroadcast(_gated_source(gate, [b"ab", b"cd"]), label="shared")

        subscriptions = await asyncio.gather(*(registry.acquire_or_create("src", create) for _ in range(3)))
        assert len({id(subscription.broadcast) for subscription in subscriptions}) == 1
        assert "src" in registry
        gate.set()
        payloads = await asyncio.gather(*(_drain(subscription) for subscription in subscriptions))
        await asyncio.sleep(0.01)
        return payloads, registry

    payloads, registry = asyncio.run(scenario())

    assert calls == ["create"]
    assert payloads == [b"abcd", b"abcd", b"abcd"]
    assert len(registry) == 0


def test_creation_failure_reaches_every_waiter_and_clears_entry() -> None:
    calls: list[str] = []

    async def scenario():
        registry = StreamRegistry()

        async def create():
            calls.append("create")
            await asyncio.sleep(0.05)
            raise ExtractionFailed(1, reason="unavailable", source_ref="src", mode="fast")

        results = await asyncio.gather(
            *(registry.acquire_or_create("src", create) for _ in range(2)),
            return_exceptions=True,
        )
        return results, registry

    results, registry = asyncio.run(scenario())

    assert calls == ["create"]
    assert all(isinstance(result, ExtractionFailed) for result in results)
    assert "src" not in registry


def test_waiter_takes_over_when_creator_is_cancelled() -> None:
    calls: list[str] = []

    async def scenario():
        registry = StreamRegistry()
        gate = asyncio.Event()

        async def slow_create():
            calls.append("slow")
            await asyncio.sleep(10)

        async def quick_create():
            calls.append("quick")
            return StreamBroadcast(_gated_source(gate, [b"x"]), label="quick")

        creator = asyncio.create_task(registry.acquire_or_create("src", slow_create))
        await asyncio.sleep(0.01)
        waiter = asyncio.create_task(registry.acquire_or_create("src", quick_create))
        await asyncio.sleep(0.01)
        creator.cancel()
        subscription = await asyncio.wait_for(waiter, timeout=1.0)
        gate.set()
        await asyncio.gather(creator, return_exceptions=True)
        return await _drain(subscription)

    assert asyncio.run(scenario()) == b"x"
    assert calls == ["slow", "quick"]


def test_finished_stream_is_replaced_by_a_new_one() -> None:
    calls: list[str] = []

    async def scenario():
        registry = StreamRegistry()
        gate = asyncio.Event()
        gate.set()

        async def create():
            calls.append("create")
            return StreamBroadcast(_gated_source(gate, [b"done"]), label="short")

        first = await registry.acquire_or_create("src", create)
        assert await _drain(first) == b"done"
        await asyncio.sleep(0.01)
        second = await registry.acquire_or_create("src", create)
        assert await _drain(second) == b"done"

    asyncio.run(scenario())

    assert calls == ["create", "create"]


def test_snapshot_and_shutdown() -> None:
    async def scenario():
        registry = StreamRegistry()
        gate = asyncio.Event()
        closed: list[bool] = []

        async def closer():
            closed.append(True)

        async def create():
            return StreamBroadcast(_gated_source(gate, [b"never"]), closer=closer, label="live")

        await registry.acquire_or_create("src", create)
        snapshot = registry.snapshot()
        await registry.shutdown()
        return snapshot, closed, registry

    snapshot, closed, registry = asyncio.run(scenario())

    assert snapshot[0]["source_ref"] == "src"
    assert snapshot[0]["state"] == "streaming"
    assert snapshot[0]["subscribers"] == 1
    assert closed == [True]
    assert len(registry) == 0
