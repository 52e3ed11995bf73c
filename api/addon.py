"""Addon documents: manifest, catalog/meta entries and stream links."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl, quote, urlencode

from fastapi import Request

from plugins.base import VideoItem, format_duration, sanitize_string
from plugins.manager import PluginManager

logger = logging.getLogger(__name__)

ADDON_ID = "com.streamgate.gateway"
ADDON_NAME = "Streamgate - Universal Video Gateway"
ADDON_VERSION = "1.0.0"
CONTENT_TYPE = "movie"
CATALOG_SEPARATOR = "-"
ID_SEPARATOR = "_"


def decode_config(raw: str | None) -> dict[str, Any]:
    """Decode the base64 JSON ``config`` query parameter.

    Standard and URL-safe alphabets are accepted, with or without padding.
    Anything undecodable yields an empty config.
    """
    if not raw:
        return {}
    # "+" from the standard alphabet arrives as a space after query decoding.
    text = raw.strip().replace(" ", "+")
    padded = text + "=" * (-len(text) % 4)
    decoder = base64.urlsafe_b64decode if ("-" in text or "_" in text) else base64.b64decode
    try:
        config = json.loads(decoder(padded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        logger.warning("Config decode error: %s", exc)
        return {}
    if not isinstance(config, dict):
        logger.warning("Config decode error: expected an object, got %s", type(config).__name__)
        return {}
    return config


def base_url(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto.split(',')[0].strip()}://{host.split(',')[0].strip()}"


def split_id(value: str, separator: str = ID_SEPARATOR) -> tuple[str, str] | None:
    """Split ``<plugin><sep><rest>`` on the first separator only."""
    head, sep, tail = (value or "").partition(separator)
    if not sep or not head or not tail:
        return None
    return head, tail


def parse_extra(extra: str | None) -> dict[str, str]:
    if not extra:
        return {}
    return dict(parse_qsl(extra, keep_blank_values=True))


def build_manifest(root_url: str, config: dict[str, Any], plugin_manager: PluginManager) -> dict[str, Any]:
    active = plugin_manager.active_plugins(config)
    catalogs = []
    for plugin in active:
        for catalog in plugin.catalogs(config.get(plugin.name) or {}):
            catalogs.append(
                {
                    "type": CONTENT_TYPE,
                    "id": f"{plugin.name}{CATALOG_SEPARATOR}{catalog['id']}",
                    "name": catalog["name"],
                    "extra": catalog.get("extra") or [],
                }
            )
    return {
        "id": ADDON_ID,
        "name": ADDON_NAME,
        "description": "Multi-platform video streaming addon",
        "version": ADDON_VERSION,
        "logo": f"{root_url}/logo.png",
        "background": f"{root_url}/background.jpg",
        "resources": ["catalog", "stream", "meta"],
        "types": [CONTENT_TYPE],
        "idPrefixes": [plugin.name for plugin in active],
        "catalogs": catalogs,
    }


def _release_year(published_at: str | None) -> int | None:
    if not published_at:
        return None
    try:
        return datetime.fromisoformat(published_at.replace("Z", "+00:00")).year
    except ValueError:
        return None


def video_to_meta(meta_id: str, video: VideoItem, *, with_genre: bool = False) -> dict[str, Any]:
    meta = {
        "id": meta_id,
        "type": CONTENT_TYPE,
        "name": video["title"],
        "description": video["description"],
        "poster": video["thumbnail"],
        "posterShape": "landscape",
        "background": video["thumbnail"],
        "director": [video["channel_title"]],
        "cast": [video["channel_title"]],
        "releaseInfo": video.get("duration") or "Video",
        "year": _release_year(video.get("published_at")),
        "released": video.get("published_at"),
    }
    if with_genre:
        meta["genre"] = [video["channel_title"]]
    return meta


def video_from_ytdlp_info(info: dict[str, Any], video_id: str) -> VideoItem:
    """Build a video record from a yt-dlp metadata dump."""
    published_at = ""
    upload_date = str(info.get("upload_date") or "")
    if upload_date:
        try:
            published_at = datetime.strptime(upload_date, "%Y%m%d").replace(tzinfo=timezone.utc).isoformat()
        except ValueError:
            logger.debug("Unparsable upload_date %r for %s", upload_date, video_id)
    duration = info.get("duration")
    return {
        "id": str(info.get("id") or video_id),
        "title": sanitize_string(info.get("title")) or "Untitled Video",
        "description": sanitize_string(info.get("description")),
        "thumbnail": info.get("thumbnail") or "",
        "channel_title": sanitize_string(info.get("uploader") or info.get("channel")) or "Unknown Channel",
        "published_at": published_at,
        "duration": format_duration(duration) if duration else "Video",
    }


def stream_entries(
    root_url: str,
    plugin_name: str,
    video_id: str,
    *,
    config_param: str | None = None,
    fast_max_height: int = 720,
) -> list[dict[str, str]]:
    """Best quality first, fast start second, both through the proxy endpoint."""
    target = f"{root_url}/proxy/{quote(plugin_name, safe='')}/{quote(video_id, safe='')}"

    def _link(quality: str) -> str:
        params = {"quality": quality}
        if config_param:
            params["config"] = config_param
        return f"{target}?{urlencode(params)}"

    return [
        {"name": "Streamgate", "title": "Best available quality", "url": _link("best")},
        {"name": "Streamgate", "title": f"Fast start (up to {fast_max_height}p)", "url": _link("fast")},
    ]
