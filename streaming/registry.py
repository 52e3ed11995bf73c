"""In-flight stream bookkeeping: at most one extractor per source reference."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from streaming.broadcast import StreamBroadcast, Subscription

logger = logging.getLogger(__name__)

CreateFn = Callable[[], Awaitable[StreamBroadcast]]


@dataclass
class _Entry:
    source_ref: str
    ready: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    broadcast: StreamBroadcast | None = None


class StreamRegistry:
    """Maps a source reference to the broadcast currently serving it.

    Entries are keyed by source reference only. A request for a different
    quality tier joins whatever is already running for that source.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    async def acquire_or_create(self, source_ref: str, create_fn: CreateFn) -> Subscription:
        while True:
            entry = self._entries.get(source_ref)
            if entry is None:
                return await self._create(source_ref, create_fn)
            try:
                broadcast = await asyncio.shield(entry.ready)
            except asyncio.CancelledError:
                if not entry.ready.cancelled():
                    raise
                # The creating request went away before the first byte.
                self._discard(source_ref, entry)
                continue
            subscription = broadcast.subscribe()
            if subscription is not None:
                logger.info(
                    "joined in-flight stream source=%s subscribers=%d",
                    source_ref,
                    broadcast.subscriber_count,
                )
                return subscription
            self._discard(source_ref, entry)

    async def _create(self, source_ref: str, create_fn: CreateFn) -> Subscription:
        entry = _Entry(source_ref=source_ref, ready=asyncio.get_running_loop().create_future())
        # No await between the lookup and this insert.
        self._entries[source_ref] = entry
        try:
            broadcast = await create_fn()
        except asyncio.CancelledError:
            self._discard(source_ref, entry)
            entry.ready.cancel()
            raise
        except Exception as exc:
            self._discard(source_ref, entry)
            entry.ready.set_exception(exc)
            # Waiters re-raise it; mark it retrieved for the no-waiter case.
            entry.ready.exception()
            raise
        entry.broadcast = broadcast
        subscription = broadcast.subscribe()
        broadcast.add_done_callback(functools.partial(self._discard, source_ref, entry))
        broadcast.start()
        entry.ready.set_result(broadcast)
        return subscription

    def _discard(self, source_ref: str, entry: _Entry) -> None:
        if self._entries.get(source_ref) is entry:
            del self._entries[source_ref]
            logger.debug("stream entry removed source=%s", source_ref)

    def get(self, source_ref: str) -> StreamBroadcast | None:
        entry = self._entries.get(source_ref)
        return entry.broadcast if entry is not None else None

    def snapshot(self) -> list[dict[str, Any]]:
        items = []
        for source_ref, entry in list(self._entries.items()):
            item: dict[str, Any] = {"source_ref": source_ref}
            if entry.broadcast is None:
                item["state"] = "starting"
                item["age_sec"] = round(time.monotonic() - entry.created_at, 1)
            else:
                item["state"] = "streaming"
                item.update(entry.broadcast.snapshot())
            items.append(item)
        return items

    async def shutdown(self) -> None:
        broadcasts = [entry.broadcast for entry in list(self._entries.values()) if entry.broadcast is not None]
        if not broadcasts:
            return
        logger.info("stopping %d in-flight stream(s)", len(broadcasts))
        results = await asyncio.gather(*(broadcast.aclose() for broadcast in broadcasts), return_exceptions=True)
        for broadcast, result in zip(broadcasts, results):
            if isinstance(result, Exception):
                logger.error("failed to stop stream %s: %s", broadcast.label, result)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, source_ref: object) -> bool:
        return source_ref in self._entries
