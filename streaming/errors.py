"""Failures raised by the streaming core.

Every error carries a stable ``code`` and the HTTP status the proxy layer
answers with when the failure happens before any byte was sent.
"""

from __future__ import annotations

from typing import Any


class StreamError(Exception):
    """Base class for streaming core failures."""

    code = "stream_error"
    status_code = 500

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code, "detail": str(self)}


class StreamInitTimeout(StreamError):
    """No output byte arrived before the startup deadline."""

    code = "stream_init_timeout"
    status_code = 504

    def __init__(self, source_ref: str, timeout_sec: float, *, mode: str | None = None) -> None:
        self.source_ref = source_ref
        self.timeout_sec = timeout_sec
        self.mode = mode
        label = f"{mode} stream" if mode else "stream"
        super().__init__(f"{label} produced no data within {timeout_sec:g}s")

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["timeout_sec"] = self.timeout_sec
        payload["mode"] = self.mode
        return payload


class ExtractionFailed(StreamError):
    """The extractor exited without producing output."""

    code = "extraction_failed"
    status_code = 502

    def __init__(
        self,
        exit_code: int | None,
        reason: str = "unknown",
        detail: str | None = None,
        *,
        source_ref: str | None = None,
        mode: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.reason = reason
        self.detail = detail
        self.source_ref = source_ref
        self.mode = mode
        message = f"extraction failed (exit_code={exit_code}, reason={reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["exit_code"] = self.exit_code
        payload["reason"] = self.reason
        payload["mode"] = self.mode
        return payload


class DirectURLUnavailable(StreamError):
    """No direct media URL could be extracted; callers fall back to proxying."""

    code = "direct_url_unavailable"
    status_code = 502


class ProcessSpawnError(StreamError):
    """The extractor binary could not be launched at all."""

    code = "process_spawn_error"
    status_code = 500

    def __init__(self, binary: str, cause: BaseException) -> None:
        self.binary = binary
        self.cause = cause
        super().__init__(f"failed to launch {binary!r}: {cause}")


class StreamBusy(StreamError):
    """An in-flight stream exists for the source but can no longer be joined."""

    code = "stream_busy"
    status_code = 503


class SubscriberDropped(StreamError):
    """A consumer fell too far behind a shared stream and was detached."""

    code = "subscriber_dropped"
    status_code = 503
