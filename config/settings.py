"""Application settings resolved from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "STREAMGATE_"

APP_NAME = "streamgate"
APP_PORT = int(os.environ.get("PORT") or os.environ.get("STREAMGATE_PORT") or 3100)
APP_HOST = os.environ.get("STREAMGATE_HOST", "0.0.0.0")
LOG_DIR = os.environ.get("STREAMGATE_LOG_DIR") or None
LOG_LEVEL = os.environ.get("STREAMGATE_LOG_LEVEL", "INFO").strip().upper() or "INFO"
TRUST_PROXY = os.environ.get("STREAMGATE_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StreamSettings:
    # External extractor
    ytdlp_bin: str = "yt-dlp"
    player_client: str = "android"
    socket_timeout: int = 30

    # Quality tiers
    fast_max_height: int = 720
    fast_startup_timeout: float = 15.0
    best_startup_timeout: float = 30.0

    # One-shot extractor calls
    direct_url_timeout: float = 20.0
    metadata_timeout: float = 30.0
    version_timeout: float = 5.0

    # Direct URL cache
    url_cache_ttl: float = 2 * 60 * 60.0
    url_cache_max_entries: int = 1024

    # Process and fan-out
    kill_grace_sec: float = 3.0
    chunk_size: int = 64 * 1024
    replay_limit_bytes: int = 32 * 1024 * 1024
    subscriber_queue_chunks: int = 64
    slow_consumer_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StreamSettings":
        """Build settings from ``STREAMGATE_<FIELD>`` variables.

        Unset variables keep the dataclass default; unparsable values are
        logged and ignored.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for item in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{item.name.upper()}")
            if raw is None or not str(raw).strip():
                continue
            caster = type(item.default)
            try:
                values[item.name] = caster(str(raw).strip())
            except ValueError:
                logger.warning("Ignoring invalid setting %s%s=%r", ENV_PREFIX, item.name.upper(), raw)
        return cls(**values)
