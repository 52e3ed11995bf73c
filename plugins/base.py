"""Base class and shared helpers for content-source plugins."""

from __future__ import annotations

from typing import Any, TypedDict


class PluginError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VideoItem(TypedDict):
    """Normalized video record returned by every plugin."""

    id: str
    title: str
    description: str
    thumbnail: str
    channel_title: str
    published_at: str
    duration: str


def format_duration(seconds) -> str:
    if not seconds:
        return "N/A"
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def sanitize_string(value) -> str:
    if not value:
        return ""
    return str(value).replace("<", "").replace(">", "").strip()


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class VideoPlugin:
    """A source of videos: search, followed feeds, metadata and watch URLs.

    ``config`` arguments are the plugin's own section of the client config.
    Network-bound methods are synchronous; the HTTP layer runs them in a
    worker thread.
    """

    name = ""
    display_name = ""

    def config_schema(self) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    def catalogs(self, config: dict[str, Any]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def search(self, query: str, config: dict[str, Any], limit: int = 25) -> list[VideoItem]:
        raise NotImplementedError

    def channel_feed(self, config: dict[str, Any]) -> list[VideoItem]:
        raise NotImplementedError

    def video_meta(self, video_id: str, config: dict[str, Any]) -> VideoItem:
        raise NotImplementedError

    def video_url(self, video_id: str, config: dict[str, Any] | None = None) -> str:
        raise NotImplementedError

    def is_video_supported(self, url: str) -> bool:
        return False
