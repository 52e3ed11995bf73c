"""YouTube source backed by the YouTube Data API v3."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import requests

from plugins.base import PluginError, VideoItem, VideoPlugin, format_duration, sanitize_string

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/youtube/v3"
WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
FALLBACK_THUMBNAIL = "https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"

FEED_LIMIT = 25
CHANNEL_VIDEO_LIMIT = 10
MAX_SEARCH_RESULTS = 50

_VIDEO_URL_RE = re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])")
_CHANNEL_ID_RE = re.compile(r"/channel/([A-Za-z0-9_-]{10,})")
_HANDLE_RE = re.compile(r"/@([A-Za-z0-9._-]+)")
_ISO_DURATION_RE = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$")
_THUMBNAIL_PREFERENCE = ("maxres", "standard", "high", "medium", "default")


def parse_iso8601_duration(value: str | None) -> int | None:
    """Return the number of seconds in an ISO-8601 duration like ``PT1H2M3S``."""
    if not value:
        return None
    match = _ISO_DURATION_RE.match(value.strip())
    if not match:
        return None
    days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def _error_reason(response) -> str | None:
    try:
        return response.json()["error"]["errors"][0]["reason"]
    except (ValueError, KeyError, IndexError, TypeError):
        return None


class YouTubePlugin(VideoPlugin):
    name = "youtube"
    display_name = "YouTube"

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout_sec: int = 15,
        region_code: str = "IT",
        relevance_language: str = "it",
    ) -> None:
        self._session = session or requests.Session()
        self.timeout_sec = timeout_sec
        self.region_code = region_code
        self.relevance_language = relevance_language

    def config_schema(self) -> dict[str, dict[str, Any]]:
        return {
            "apiKey": {
                "type": "string",
                "required": True,
                "label": "YouTube API Key",
                "description": "Get from Google Cloud Console",
            },
            "channels": {
                "type": "array",
                "items": "url",
                "required": False,
                "label": "Followed channels",
                "description": "URLs of the YouTube channels to follow",
            },
        }

    def catalogs(self, config: dict[str, Any]) -> list[dict[str, Any]]:
        catalogs = [
            {
                "id": "search",
                "name": "YouTube - Search",
                "extra": [{"name": "search", "isRequired": True, "options": [""]}],
            }
        ]
        if config.get("channels"):
            catalogs.append({"id": "channels", "name": "YouTube - Followed channels"})
        return catalogs

    def _request_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._session.get(f"{API_BASE}/{path}", params=params, timeout=self.timeout_sec)
        except requests.RequestException as exc:
            raise PluginError(f"YouTube request failed: {exc}") from exc
        if response.status_code != 200:
            reason = _error_reason(response)
            if reason == "quotaExceeded":
                raise PluginError("YouTube API quota exceeded", status_code=response.status_code)
            if reason == "keyInvalid":
                raise PluginError("Invalid YouTube API key", status_code=response.status_code)
            raise PluginError(f"YouTube request failed ({response.status_code})", status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise PluginError("YouTube returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _require_api_key(config: dict[str, Any]) -> str:
        api_key = (config or {}).get("apiKey")
        if not api_key:
            raise PluginError("YouTube API key required", status_code=400)
        return api_key

    def search(self, query: str, config: dict[str, Any], limit: int = 25) -> list[VideoItem]:
        api_key = self._require_api_key(config)
        payload = self._request_json(
            "search",
            {
                "part": "snippet",
                "q": query,
                "type": "video",
                "maxResults": min(MAX_SEARCH_RESULTS, int(limit)),
                "key": api_key,
                "regionCode": self.region_code,
                "relevanceLanguage": self.relevance_language,
                "videoEmbeddable": "any",
                "safeSearch": "none",
            },
        )
        return [self.format_video_item(item) for item in payload.get("items") or []]

    def channel_feed(self, config: dict[str, Any]) -> list[VideoItem]:
        channels = (config or {}).get("channels") or []
        if not channels:
            return []
        api_key = config.get("apiKey")
        videos: list[VideoItem] = []
        for channel_url in channels:
            try:
                channel_id = self.resolve_channel_id(channel_url, api_key)
                if channel_id:
                    videos.extend(self.channel_videos(channel_id, api_key))
            except PluginError as exc:
                logger.warning("Error fetching channel %s: %s", channel_url, exc)
        videos.sort(key=lambda video: video["published_at"], reverse=True)
        return videos[:FEED_LIMIT]

    def resolve_channel_id(self, channel_url: str, api_key: str | None) -> str | None:
        """Accept ``/channel/<id>`` URLs directly and look up ``/@handle`` URLs."""
        path = urlparse(str(channel_url or "")).path
        match = _CHANNEL_ID_RE.search(path)
        if match:
            return match.group(1)
        match = _HANDLE_RE.search(path)
        if not match:
            logger.warning("Unsupported channel URL %r", channel_url)
            return None
        handle = match.group(1)
        try:
            payload = self._request_json(
                "search",
                {"part": "snippet", "q": f"@{handle}", "type": "channel", "maxResults": 1, "key": api_key},
            )
        except PluginError as exc:
            logger.warning("Error finding channel for handle @%s: %s", handle, exc)
            return None
        items = payload.get("items") or []
        if not items:
            return None
        return (items[0].get("snippet") or {}).get("channelId")

    def channel_videos(self, channel_id: str, api_key: str | None, limit: int = CHANNEL_VIDEO_LIMIT) -> list[VideoItem]:
        payload = self._request_json(
            "search",
            {
                "part": "snippet",
                "channelId": channel_id,
                "order": "date",
                "type": "video",
                "maxResults": limit,
                "key": api_key,
            },
        )
        return [self.format_video_item(item) for item in payload.get("items") or []]

    def video_meta(self, video_id: str, config: dict[str, Any]) -> VideoItem:
        api_key = self._require_api_key(config)
        payload = self._request_json("videos", {"part": "snippet,contentDetails", "id": video_id, "key": api_key})
        items = payload.get("items") or []
        if not items:
            raise PluginError(f"Video not found: {video_id}", status_code=404)
        return self.format_video_item(items[0])

    def video_url(self, video_id: str, config: dict[str, Any] | None = None) -> str:
        return WATCH_URL.format(video_id=video_id)

    def is_video_supported(self, url: str) -> bool:
        return bool(_VIDEO_URL_RE.search(url or ""))

    def format_video_item(self, item: dict[str, Any]) -> VideoItem:
        raw_id = item.get("id")
        video_id = raw_id.get("videoId") if isinstance(raw_id, dict) else raw_id
        snippet = item.get("snippet") or {}
        thumbnails = snippet.get("thumbnails") or {}
        thumbnail = next(
            (thumbnails[key]["url"] for key in _THUMBNAIL_PREFERENCE if (thumbnails.get(key) or {}).get("url")),
            FALLBACK_THUMBNAIL.format(video_id=video_id),
        )

        duration = "Video"
        seconds = parse_iso8601_duration((item.get("contentDetails") or {}).get("duration"))
        if seconds:
            duration = format_duration(seconds)

        return {
            "id": video_id,
            "title": sanitize_string(snippet.get("title")) or "Untitled Video",
            "description": sanitize_string(snippet.get("description")),
            "thumbnail": thumbnail,
            "channel_title": sanitize_string(snippet.get("channelTitle")) or "Unknown Channel",
            "published_at": snippet.get("publishedAt") or datetime.now(timezone.utc).isoformat(),
            "duration": duration,
        }
