"""Quality tiers and the yt-dlp invocations they translate to.

Strategies are pure parameter factories: they build a yt-dlp options dict
(same key names as the ``YoutubeDL`` Python API) and render it into a CLI
argv. Nothing here spawns a process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from config.settings import StreamSettings
from streaming.events import log_event

logger = logging.getLogger(__name__)

QUALITY_FAST = "fast"
QUALITY_BEST = "best"
DEFAULT_QUALITY = QUALITY_BEST
QUALITIES = (QUALITY_FAST, QUALITY_BEST)

STDOUT_TARGET = "-"
BEST_FORMAT = "bestvideo+bestaudio/best"
BEST_MERGE_CONTAINER = "mp4"


def fast_format_selector(max_height: int) -> str:
    """Pre-combined renditions only, capped at ``max_height``.

    There is deliberately no ``/best`` or ``+`` alternative: when no
    pre-combined rendition exists yt-dlp fails instead of merging.
    """
    return f"best[height<={int(max_height)}][vcodec!=none][acodec!=none]"


def normalize_quality(selector: str | None) -> str:
    value = (selector or "").strip().lower()
    if value in QUALITIES:
        return value
    if value:
        logger.debug("Unrecognized quality selector %r; using %s", selector, DEFAULT_QUALITY)
    return DEFAULT_QUALITY


def base_ytdlp_opts(settings: StreamSettings) -> dict[str, Any]:
    """Options shared by every invocation against the upstream platform."""
    opts: dict[str, Any] = {
        "noplaylist": True,
        "cachedir": False,
        "nocheckcertificate": True,
        "socket_timeout": settings.socket_timeout,
    }
    if settings.player_client:
        opts["extractor_args"] = {"youtube": {"player_client": [settings.player_client]}}
    return opts


@dataclass(frozen=True)
class Invocation:
    mode: str
    argv: tuple[str, ...]
    startup_timeout: float


class QualityStrategy:
    name = ""

    def __init__(self, settings: StreamSettings | None = None) -> None:
        self.settings = settings or StreamSettings()

    @property
    def startup_timeout(self) -> float:
        raise NotImplementedError

    def build_opts(self) -> dict[str, Any]:
        raise NotImplementedError

    def invocation(self, source_ref: str) -> Invocation:
        opts = self.build_opts()
        argv = render_ytdlp_argv(opts, source_ref, binary=self.settings.ytdlp_bin)
        log_event(
            logging.DEBUG,
            "build_stream_invocation",
            logger=logger,
            mode=self.name,
            format=opts.get("format"),
            merge_output_format=opts.get("merge_output_format"),
            startup_timeout=self.startup_timeout,
        )
        return Invocation(mode=self.name, argv=tuple(argv), startup_timeout=self.startup_timeout)


class FastStrategy(QualityStrategy):
    """Low-latency tier: a single pre-muxed file, no server-side merge."""

    name = QUALITY_FAST

    @property
    def startup_timeout(self) -> float:
        return self.settings.fast_startup_timeout

    def build_opts(self) -> dict[str, Any]:
        opts = base_ytdlp_opts(self.settings)
        opts.update(
            {
                "format": fast_format_selector(self.settings.fast_max_height),
                "outtmpl": STDOUT_TARGET,
                "noprogress": True,
                "retries": 2,
                "fragment_retries": 2,
                "buffersize": "32K",
                "http_chunk_size": "5M",
            }
        )
        if "+" in opts["format"] or opts.get("merge_output_format"):
            raise RuntimeError("fast_mode_built_merge_opts")
        return opts


class BestStrategy(QualityStrategy):
    """Highest quality tier: separate best video and audio merged into mp4."""

    name = QUALITY_BEST

    @property
    def startup_timeout(self) -> float:
        return self.settings.best_startup_timeout

    def build_opts(self) -> dict[str, Any]:
        opts = base_ytdlp_opts(self.settings)
        opts.update(
            {
                "format": BEST_FORMAT,
                "outtmpl": STDOUT_TARGET,
                "merge_output_format": BEST_MERGE_CONTAINER,
                "noprogress": True,
                "retries": 3,
                "fragment_retries": 3,
            }
        )
        return opts


_STRATEGIES = {
    QUALITY_FAST: FastStrategy,
    QUALITY_BEST: BestStrategy,
}


def select_strategy(selector: str | None, settings: StreamSettings | None = None) -> QualityStrategy:
    return _STRATEGIES[normalize_quality(selector)](settings)


def build_direct_url_opts(settings: StreamSettings) -> dict[str, Any]:
    """Ask yt-dlp for the resolved media URL only (``--get-url``).

    A redirect target has to be playable on its own, so this uses the fast
    pre-combined selector.
    """
    opts = base_ytdlp_opts(settings)
    opts.update(
        {
            "format": fast_format_selector(settings.fast_max_height),
            "geturl": True,
            "skip_download": True,
            "retries": 2,
        }
    )
    return opts


def build_metadata_opts(settings: StreamSettings) -> dict[str, Any]:
    opts = base_ytdlp_opts(settings)
    opts.update(
        {
            "dump_single_json": True,
            "skip_download": True,
            "retries": 2,
        }
    )
    return opts


def render_ytdlp_argv(opts: dict[str, Any], url: str, *, binary: str = "yt-dlp") -> list[str]:
    """Return a yt-dlp argv list suitable for create_subprocess_exec."""
    argv = [binary]

    # Core selection/output
    if opts.get("format"):
        argv.extend(["-f", str(opts["format"])])
    if opts.get("merge_output_format"):
        argv.extend(["--merge-output-format", str(opts["merge_output_format"])])
    if opts.get("outtmpl"):
        argv.extend(["-o", str(opts["outtmpl"])])
    if opts.get("geturl"):
        argv.append("--get-url")
    if opts.get("dump_single_json"):
        argv.append("--dump-single-json")
    if opts.get("skip_download") and not (opts.get("geturl") or opts.get("dump_single_json")):
        argv.append("--skip-download")
    if opts.get("noprogress"):
        argv.append("--no-progress")

    # Playlist behavior
    if opts.get("noplaylist") is True:
        argv.append("--no-playlist")
    elif opts.get("noplaylist") is False:
        argv.append("--yes-playlist")

    if opts.get("cachedir") is False:
        argv.append("--no-cache-dir")

    # Transfer tuning
    if opts.get("buffersize"):
        argv.extend(["--buffer-size", str(opts["buffersize"])])
    if opts.get("http_chunk_size"):
        argv.extend(["--http-chunk-size", str(opts["http_chunk_size"])])
    if opts.get("socket_timeout") is not None:
        argv.extend(["--socket-timeout", str(opts["socket_timeout"])])

    # Retries
    if opts.get("retries") is not None:
        argv.extend(["--retries", str(opts.get("retries"))])
    if opts.get("fragment_retries") is not None:
        argv.extend(["--fragment-retries", str(opts.get("fragment_retries"))])

    # Extractor args: {"youtube":{"key":"value"}} -> --extractor-args youtube:key=value
    extractor_args = opts.get("extractor_args")
    if isinstance(extractor_args, dict):
        for extractor_name, extractor_cfg in extractor_args.items():
            if not isinstance(extractor_cfg, dict):
                continue
            pieces = []
            for arg_key, arg_value in extractor_cfg.items():
                if isinstance(arg_value, (list, tuple)):
                    value_text = ",".join(str(v).strip() for v in arg_value if str(v).strip())
                else:
                    value_text = str(arg_value or "").strip()
                if not value_text:
                    continue
                pieces.append(f"{arg_key}={value_text}")
            if pieces:
                argv.extend(["--extractor-args", f"{extractor_name}:{';'.join(pieces)}"])

    if opts.get("nocheckcertificate"):
        argv.append("--no-check-certificates")

    # The source is always positional, even if it starts with "-".
    argv.extend(["--", str(url)])
    return argv
