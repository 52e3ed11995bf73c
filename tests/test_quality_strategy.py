from __future__ import annotations

import pytest

from config.settings import StreamSettings
from streaming.quality import (
    BestStrategy,
    FastStrategy,
    build_direct_url_opts,
    build_metadata_opts,
    normalize_quality,
    render_ytdlp_argv,
    select_strategy,
)

SOURCE = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def _flag_value(argv: list[str] | tuple[str, ...], flag: str) -> str:
    return argv[argv.index(flag) + 1]


def test_fast_invocation_never_merges() -> None:
    invocation = FastStrategy(StreamSettings()).invocation(SOURCE)

    selector = _flag_value(invocation.argv, "-f")
    assert "+" not in selector
    assert "height<=720" in selector
    assert "--merge-output-format" not in invocation.argv
    assert _flag_value(invocation.argv, "-o") == "-"
    assert invocation.startup_timeout == 15.0
    assert invocation.mode == "fast"


def test_fast_selector_respects_configured_height() -> None:
    invocation = FastStrategy(StreamSettings(fast_max_height=480)).invocation(SOURCE)

    assert "height<=480" in _flag_value(invocation.argv, "-f")


def test_best_invocation_merges_into_mp4_on_stdout() -> None:
    invocation = BestStrategy(StreamSettings()).invocation(SOURCE)

    assert _flag_value(invocation.argv, "-f") == "bestvideo+bestaudio/best"
    assert _flag_value(invocation.argv, "--merge-output-format") == "mp4"
    assert _flag_value(invocation.argv, "-o") == "-"
    assert invocation.startup_timeout == 30.0


def test_invocation_ends_with_positional_source() -> None:
    invocation = BestStrategy(StreamSettings(ytdlp_bin="/opt/bin/yt-dlp")).invocation(SOURCE)

    assert invocation.argv[0] == "/opt/bin/yt-dlp"
    assert invocation.argv[-2] == "--"
    assert invocation.argv[-1] == SOURCE
    assert "--no-playlist" in invocation.argv
    assert "--no-cache-dir" in invocation.argv
    assert _flag_value(invocation.argv, "--extractor-args") == "youtube:player_client=android"


def test_strategies_do_not_share_option_dicts() -> None:
    strategy = FastStrategy(StreamSettings())
    first = strategy.build_opts()
    first["format"] = "bestvideo+bestaudio"

    assert "+" not in strategy.build_opts()["format"]


@pytest.mark.parametrize(
    ("selector", "expected"),
    [("fast", "fast"), ("FAST", "fast"), (" best ", "best"), (None, "best"), ("", "best"), ("4k", "best")],
)
def test_normalize_quality(selector, expected) -> None:
    assert normalize_quality(selector) == expected


def test_select_strategy_defaults_to_best() -> None:
    assert isinstance(select_strategy(None), BestStrategy)
    assert isinstance(select_strategy("fast"), FastStrategy)


def test_direct_url_opts_ask_for_url_of_precombined_format() -> None:
    argv = render_ytdlp_argv(build_direct_url_opts(StreamSettings()), SOURCE)

    assert "--get-url" in argv
    assert "+" not in _flag_value(argv, "-f")
    assert "-o" not in argv


def test_metadata_opts_dump_json() -> None:
    argv = render_ytdlp_argv(build_metadata_opts(StreamSettings()), SOURCE)

    assert "--dump-single-json" in argv
    assert "-f" not in argv


def test_source_starting_with_dash_stays_positional() -> None:
    argv = render_ytdlp_argv({"format": "best"}, "-rf")

    assert argv[-2:] == ["--", "-rf"]
