"""HTTP-facing glue between a client request and the streaming core."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse

from config.settings import StreamSettings
from streaming.broadcast import StreamBroadcast, Subscription
from streaming.errors import DirectURLUnavailable, StreamError
from streaming.events import log_event
from streaming.extractor import Extractor
from streaming.process_runner import ProcessRunner
from streaming.quality import Invocation, normalize_quality, select_strategy
from streaming.registry import StreamRegistry
from streaming.url_cache import URLCache

logger = logging.getLogger(__name__)

STREAM_MEDIA_TYPE = "video/mp4"

RunnerFactory = Callable[[Invocation, str], ProcessRunner]


def stream_headers() -> dict[str, str]:
    return {
        "Accept-Ranges": "bytes",
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
        "Access-Control-Allow-Origin": "*",
    }


class SubscriptionStreamingResponse(StreamingResponse):
    """Streaming response that always releases its subscription.

    The close runs when the ASGI call ends for any reason: the body was fully
    sent, sending failed, or the client disconnected and the call was
    cancelled.
    """

    def __init__(self, subscription: Subscription, **kwargs) -> None:
        self.subscription = subscription
        super().__init__(**kwargs)

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.subscription.close()


class ProxyController:
    def __init__(
        self,
        settings: StreamSettings | None = None,
        *,
        registry: StreamRegistry | None = None,
        url_cache: URLCache | None = None,
        extractor: Extractor | None = None,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        self.settings = settings or StreamSettings()
        self.registry = registry if registry is not None else StreamRegistry()
        if url_cache is None:
            url_cache = URLCache(self.settings.url_cache_ttl, max_entries=self.settings.url_cache_max_entries)
        self.url_cache = url_cache
        self.extractor = extractor or Extractor(self.settings)
        self._runner_factory = runner_factory or self._default_runner
        self._pending_direct: dict[str, asyncio.Future] = {}

    def _default_runner(self, invocation: Invocation, source_ref: str) -> ProcessRunner:
        return ProcessRunner(
            invocation.argv,
            source_ref=source_ref,
            mode=invocation.mode,
            chunk_size=self.settings.chunk_size,
            kill_grace_sec=self.settings.kill_grace_sec,
        )

    async def open_stream(self, source_ref: str, quality: str | None = None) -> Subscription:
        """Return a subscription to the stream for ``source_ref``.

        Joins the in-flight stream when one exists, otherwise spawns the
        extractor and waits for its first byte.
        """
        if not source_ref:
            raise ValueError("source_ref is required")
        strategy = select_strategy(quality, self.settings)

        async def _create() -> StreamBroadcast:
            invocation = strategy.invocation(source_ref)
            runner = self._runner_factory(invocation, source_ref)
            output = await runner.start(invocation.startup_timeout)
            return StreamBroadcast(
                output,
                closer=runner.kill,
                label=f"{invocation.mode}:{source_ref}",
                session=runner.session,
                replay_limit=self.settings.replay_limit_bytes,
                max_chunks=self.settings.subscriber_queue_chunks,
                stall_timeout=self.settings.slow_consumer_timeout,
            )

        subscription = await self.registry.acquire_or_create(source_ref, _create)
        session = subscription.broadcast.session
        if session is not None and session.mode != strategy.name:
            logger.info(
                "quality %s requested for %s; serving in-flight %s stream",
                strategy.name,
                source_ref,
                session.mode,
            )
        return subscription

    async def resolve_direct_url(self, source_ref: str) -> str | None:
        """Return a direct media URL, or ``None`` when only proxying will work."""
        cached = self.url_cache.get(source_ref)
        if cached:
            logger.debug("direct URL cache hit source=%s", source_ref)
            return cached

        pending = self._pending_direct.get(source_ref)
        if pending is None:
            pending = asyncio.ensure_future(self._extract_direct_url(source_ref))
            self._pending_direct[source_ref] = pending

            def _forget(future: asyncio.Future) -> None:
                if self._pending_direct.get(source_ref) is future:
                    del self._pending_direct[source_ref]

            pending.add_done_callback(_forget)
        try:
            return await asyncio.shield(pending)
        except DirectURLUnavailable as exc:
            logger.info("direct URL unavailable for %s (%s); falling back to proxy", source_ref, exc)
            return None

    async def _extract_direct_url(self, source_ref: str) -> str:
        direct_url = await self.extractor.direct_url(source_ref)
        self.url_cache.put(source_ref, direct_url)
        return direct_url

    async def handle(
        self,
        request: Request,
        source_ref: str,
        quality: str | None = None,
        *,
        redirect: bool = False,
    ) -> Response:
        mode = normalize_quality(quality)
        headers = stream_headers()
        headers["X-Stream-Quality"] = mode

        if request.method == "HEAD":
            # Probes never start an extractor.
            response = Response(status_code=200, media_type=STREAM_MEDIA_TYPE, headers=headers)
            del response.headers["content-length"]
            return response

        try:
            if redirect:
                direct_url = await self.resolve_direct_url(source_ref)
                if direct_url:
                    log_event(logging.INFO, "proxy_redirect", logger=logger, source_ref=source_ref)
                    return RedirectResponse(direct_url, status_code=302, headers={"Cache-Control": "no-cache"})
            subscription = await self.open_stream(source_ref, mode)
        except StreamError as exc:
            log_event(
                logging.WARNING,
                "proxy_stream_failed",
                logger=logger,
                source_ref=source_ref,
                mode=mode,
                error=exc.code,
                detail=str(exc),
            )
            return JSONResponse(exc.to_payload(), status_code=exc.status_code)

        return SubscriptionStreamingResponse(
            subscription,
            content=self._relay(subscription, source_ref),
            media_type=STREAM_MEDIA_TYPE,
            headers=headers,
        )

    async def _relay(self, subscription: Subscription, source_ref: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in subscription:
                yield chunk
        except StreamError as exc:
            # Headers are already out; aborting the connection is the only signal left.
            logger.warning(
                "stream for %s aborted after %d bytes: %s",
                source_ref,
                subscription.bytes_delivered,
                exc,
            )
            raise
        finally:
            subscription.close()

    def snapshot(self) -> dict:
        return {
            "streams": self.registry.snapshot(),
            "url_cache_entries": len(self.url_cache),
        }

    async def aclose(self) -> None:
        await self.registry.shutdown()
