from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from config.settings import StreamSettings
from streaming.errors import DirectURLUnavailable, ExtractionFailed
from streaming.extractor import Extractor

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses an executable script as yt-dlp")

SOURCE = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def _fake_ytdlp(tmp_path: Path, body: str) -> str:
    script = tmp_path / "yt-dlp"
    script.write_text(f"#!{sys.executable}\nimport sys\n{body}\n", encoding="utf-8")
    script.chmod(0o755)
    return str(script)


def _extractor(tmp_path: Path, body: str, **settings) -> Extractor:
    return Extractor(StreamSettings(ytdlp_bin=_fake_ytdlp(tmp_path, body), **settings))


def test_direct_url_returns_single_http_url(tmp_path: Path) -> None:
    body = (
        "assert '--get-url' in sys.argv and sys.argv[-1].startswith('https://')\n"
        "print('https://rr1.googlevideo.com/videoplayback?id=1')"
    )
    extractor = _extractor(tmp_path, body)

    url = asyncio.run(extractor.direct_url(SOURCE))

    assert url == "https://rr1.googlevideo.com/videoplayback?id=1"


def test_direct_url_with_separate_renditions_is_unavailable(tmp_path: Path) -> None:
    body = "print('https://cdn.example/video')\nprint('https://cdn.example/audio')"
    extractor = _extractor(tmp_path, body)

    with pytest.raises(DirectURLUnavailable):
        asyncio.run(extractor.direct_url(SOURCE))


def test_direct_url_failure_is_unavailable(tmp_path: Path) -> None:
    body = "sys.stderr.write('ERROR: [youtube] abc: Video unavailable\\n')\nsys.exit(1)"
    extractor = _extractor(tmp_path, body)

    with pytest.raises(DirectURLUnavailable) as excinfo:
        asyncio.run(extractor.direct_url(SOURCE))

    assert "Video unavailable" in str(excinfo.value)


def test_direct_url_timeout_is_unavailable(tmp_path: Path) -> None:
    extractor = _extractor(tmp_path, "import time\ntime.sleep(30)", direct_url_timeout=0.3)

    with pytest.raises(DirectURLUnavailable):
        asyncio.run(extractor.direct_url(SOURCE))


def test_metadata_parses_json_dump(tmp_path: Path) -> None:
    info = {"id": "dQw4w9WgXcQ", "title": "Never Gonna", "duration": 212}
    extractor = _extractor(tmp_path, f"print({json.dumps(json.dumps(info))})")

    assert asyncio.run(extractor.metadata(SOURCE)) == info


def test_metadata_failure_carries_exit_code_and_reason(tmp_path: Path) -> None:
    body = "sys.stderr.write('ERROR: [youtube] abc: Sign in to confirm your age\\n')\nsys.exit(2)"
    extractor = _extractor(tmp_path, body)

    with pytest.raises(ExtractionFailed) as excinfo:
        asyncio.run(extractor.metadata(SOURCE))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.reason == "unavailable"


def test_version_probe(tmp_path: Path) -> None:
    extractor = _extractor(tmp_path, "print('2024.08.06')")

    assert asyncio.run(extractor.version()) == "2024.08.06"


def test_version_probe_without_binary_returns_none(tmp_path: Path) -> None:
    extractor = Extractor(StreamSettings(ytdlp_bin=str(tmp_path / "missing")))

    assert asyncio.run(extractor.version()) is None
