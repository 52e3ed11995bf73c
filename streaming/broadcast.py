"""Fan-out of one extractor output to any number of HTTP consumers.

Process stdout is a single-consumer pipe, so it is read by one pump task
and copied into a queue per subscription. New subscriptions first replay
everything produced so far, which is kept while it fits in the replay
window. Past that point the stream cannot be joined any more.

With a single subscriber the pump waits for it indefinitely, which keeps
pipe backpressure on the extractor. Once the stream is shared, a subscriber
that has blocked delivery for a full stall timeout is dropped, including one
that stalled before the others joined.
"""

from __future__ import annotations

import asyncio
import collections
import itertools
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

from streaming.errors import StreamBusy, StreamError, SubscriberDropped
from streaming.session import StreamSession

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_LIMIT = 32 * 1024 * 1024
DEFAULT_QUEUE_CHUNKS = 64
DEFAULT_STALL_TIMEOUT = 30.0

_subscription_ids = itertools.count(1)


class Subscription:
    """One consumer's view of a broadcast, iterated with ``async for``."""

    def __init__(self, broadcast: "StreamBroadcast", replay: list[bytes], max_chunks: int) -> None:
        self.id = next(_subscription_ids)
        self.broadcast = broadcast
        self._pending: collections.deque[bytes] = collections.deque(replay)
        self._max_chunks = max(1, int(max_chunks))
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._eof = False
        self._error: BaseException | None = None
        self.closed = False
        self.bytes_delivered = 0
        if self._pending:
            self._readable.set()
        self._refresh_writable()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> bytes:
        while not self._pending:
            if self._error is not None:
                raise self._error
            if self._eof or self.closed:
                raise StopAsyncIteration
            self._readable.clear()
            await self._readable.wait()
        chunk = self._pending.popleft()
        self.bytes_delivered += len(chunk)
        self._refresh_writable()
        return chunk

    def close(self) -> None:
        """Detach from the broadcast. Synchronous and idempotent."""
        if self.closed:
            return
        self.closed = True
        self._pending.clear()
        self._readable.set()
        self._writable.set()
        self.broadcast._detach(self)

    def has_room(self) -> bool:
        return len(self._pending) < self._max_chunks

    async def wait_writable(self) -> None:
        await self._writable.wait()

    def _feed(self, chunk: bytes) -> None:
        self._pending.append(chunk)
        self._readable.set()
        self._refresh_writable()

    def _finish(self, error: BaseException | None = None) -> None:
        self._eof = True
        if error is not None and self._error is None:
            self._error = error
        self._readable.set()
        self._writable.set()

    def _drop(self, error: BaseException) -> None:
        self._pending.clear()
        self._finish(error)

    def _refresh_writable(self) -> None:
        if self.closed or self.has_room():
            self._writable.set()
        else:
            self._writable.clear()


class StreamBroadcast:
    def __init__(
        self,
        source: AsyncIterator[bytes],
        *,
        closer: Callable[[], Awaitable[None]] | None = None,
        label: str = "",
        session: StreamSession | None = None,
        replay_limit: int = DEFAULT_REPLAY_LIMIT,
        max_chunks: int = DEFAULT_QUEUE_CHUNKS,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
    ) -> None:
        self.label = label
        self.session = session
        self._source = source
        self._closer = closer
        self._replay_limit = replay_limit
        self._max_chunks = max_chunks
        self._stall_timeout = stall_timeout
        self._subscribers: list[Subscription] = []
        self._history: list[bytes] = []
        self._history_bytes = 0
        self._overrun = False
        self._task: asyncio.Task | None = None
        self._close_future: asyncio.Future | None = None
        self._closing = False
        self._finished = False
        self._done = False
        self._done_callbacks: list[Callable[[], Any]] = []
        self.bytes_produced = 0
        self.created_at = time.monotonic()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def joinable(self) -> bool:
        return not (self._overrun or self._closing or self._finished)

    def subscribe(self) -> Subscription | None:
        """Attach a consumer.

        Returns ``None`` once the broadcast is shutting down or finished, and
        raises ``StreamBusy`` when the replay window has been exceeded.
        """
        if self._closing or self._finished:
            return None
        if self._overrun:
            raise StreamBusy(f"stream {self.label} is already past its replay window")
        subscription = Subscription(self, list(self._history), self._max_chunks)
        self._subscribers.append(subscription)
        return subscription

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    def add_done_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` once the producer is exhausted or shut down."""
        if self._done:
            callback()
            return
        self._done_callbacks.append(callback)

    async def aclose(self) -> None:
        """Stop the pump and the producer. Idempotent."""
        if self._close_future is None:
            self._close_future = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._close_future)

    def snapshot(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "label": self.label,
            "subscribers": len(self._subscribers),
            "bytes_produced": self.bytes_produced,
            "joinable": self.joinable,
            "finished": self._finished,
            "age_sec": round(time.monotonic() - self.created_at, 1),
        }
        if self.session is not None:
            info["session"] = self.session.summary()
        return info

    async def _pump(self) -> None:
        error: BaseException | None = None
        try:
            async for chunk in self._source:
                self.bytes_produced += len(chunk)
                self._remember(chunk)
                for subscription in list(self._subscribers):
                    await self._deliver(subscription, chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("broadcast source failed label=%s", self.label)
            error = StreamError(f"upstream stream failed: {exc}")
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
            if error is not None and self._closer is not None and not self._closing:
                await self._closer()
            self._finished = True
            for subscription in list(self._subscribers):
                subscription._finish(error)
            if not self._closing:
                self._finalize()

    def _remember(self, chunk: bytes) -> None:
        if self._overrun:
            return
        if self._history_bytes + len(chunk) > self._replay_limit:
            self._overrun = True
            self._history = []
            self._history_bytes = 0
            logger.info("broadcast %s passed its replay window; no longer joinable", self.label)
            return
        self._history.append(chunk)
        self._history_bytes += len(chunk)

    async def _deliver(self, subscription: Subscription, chunk: bytes) -> None:
        if subscription.closed or subscription not in self._subscribers:
            return
        # Re-checked every stall timeout: a stalled consumer is dropped only
        # while someone else shares the stream.
        while not subscription.has_room():
            try:
                await asyncio.wait_for(subscription.wait_writable(), timeout=self._stall_timeout)
            except asyncio.TimeoutError:
                if len(self._subscribers) > 1:
                    self._drop(subscription)
                    return
            if subscription.closed or subscription not in self._subscribers:
                return
        subscription._feed(chunk)

    def _drop(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        logger.warning(
            "dropping slow consumer #%s from %s after %.1fs stall (%d bytes delivered)",
            subscription.id,
            self.label,
            self._stall_timeout,
            subscription.bytes_delivered,
        )
        subscription._drop(SubscriberDropped(f"consumer fell behind shared stream {self.label}"))
        self._after_detach()

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            self._after_detach()

    def _after_detach(self) -> None:
        if self._subscribers or self._finished or self._close_future is not None:
            return
        logger.info("last consumer left %s; stopping extractor", self.label)
        self._close_future = asyncio.ensure_future(self._shutdown())

    async def _shutdown(self) -> None:
        self._closing = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        try:
            if self._closer is not None:
                await self._closer()
        finally:
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            self._finished = True
            for subscription in list(self._subscribers):
                subscription._finish()
            self._finalize()

    def _finalize(self) -> None:
        if self._done:
            return
        self._done = True
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("broadcast_done_callback_failed label=%s", self.label)
