"""Best-effort classification of yt-dlp diagnostic output.

yt-dlp messages are not a stable contract. The categories produced here are
only used for log lines and error payloads, never for control flow.
"""

from __future__ import annotations

import collections
import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REASON_GEO_RESTRICTED = "geo_restricted"
REASON_UNAVAILABLE = "unavailable"
REASON_NETWORK = "network"
REASON_AUTH = "auth"
REASON_UNKNOWN = "unknown"

# Reasons an ExtractionFailed may carry. Authorization and quota failures
# are reported to callers as "unavailable".
FAILURE_REASONS = (REASON_GEO_RESTRICTED, REASON_UNAVAILABLE, REASON_NETWORK, REASON_UNKNOWN)

_DIAGNOSTIC_SIGNAL_MAP: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        REASON_GEO_RESTRICTED,
        (
            "not available in your country",
            "not made this video available in your country",
            "blocked it in your country",
            "geo-restricted",
            "geo restricted",
            "geoblocked",
            "geo blocked",
        ),
    ),
    (
        REASON_AUTH,
        (
            "sign in to confirm",
            "login required",
            "members-only",
            "private video",
            "quota exceeded",
            "quotaexceeded",
            "http error 401",
            "http error 403",
            "confirm you're not a bot",
        ),
    ),
    (
        REASON_UNAVAILABLE,
        (
            "video unavailable",
            "this video is unavailable",
            "has been removed",
            "account associated with this video has been terminated",
            "requested format is not available",
            "http error 404",
            "does not exist",
            "unsupported url",
        ),
    ),
    (
        REASON_NETWORK,
        (
            "timed out",
            "timeout",
            "connection reset",
            "connection refused",
            "temporary failure",
            "name or service not known",
            "network error",
            "network is unreachable",
            "unable to download webpage",
            "couldn't download webpage",
            "http error 5",
            "too many requests",
        ),
    ),
)


def classify_diagnostic(message: str | None) -> str:
    if not message:
        return REASON_UNKNOWN
    lower_msg = str(message).lower()
    for category, markers in _DIAGNOSTIC_SIGNAL_MAP:
        if any(marker in lower_msg for marker in markers):
            return category
    return REASON_UNKNOWN


def failure_reason(category: str | None) -> str:
    """Collapse a diagnostic category onto the ExtractionFailed reasons."""
    if category == REASON_AUTH:
        return REASON_UNAVAILABLE
    if category in FAILURE_REASONS:
        return category
    return REASON_UNKNOWN


@dataclass(frozen=True)
class LastError:
    category: str
    message: str
    observed_at: float

    def as_dict(self) -> dict:
        return {"category": self.category, "message": self.message, "observed_at": self.observed_at}


class DiagnosticCollector:
    """Keeps the tail of a process's stderr and its last ``ERROR`` line."""

    def __init__(self, *, label: str = "", max_lines: int = 50) -> None:
        self._label = label
        self._lines: collections.deque[str] = collections.deque(maxlen=max_lines)
        self.last_error: LastError | None = None

    def feed(self, line: str) -> None:
        text = (line or "").rstrip()
        if not text:
            return
        self._lines.append(text)
        if "ERROR" not in text:
            logger.debug("ytdlp[%s] %s", self._label, text)
            return
        category = classify_diagnostic(text)
        self.last_error = LastError(category=category, message=text, observed_at=time.time())
        logger.warning("ytdlp[%s] error category=%s %s", self._label, category, text)

    def tail(self, lines: int = 10) -> str:
        if lines <= 0:
            return ""
        return "\n".join(list(self._lines)[-lines:])

    @property
    def reason(self) -> str:
        if self.last_error is None:
            return REASON_UNKNOWN
        return failure_reason(self.last_error.category)
