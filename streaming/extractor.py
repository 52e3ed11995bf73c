"""One-shot yt-dlp calls that run to completion instead of streaming."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence
from urllib.parse import urlparse

from config.settings import StreamSettings
from streaming.diagnostics import DiagnosticCollector
from streaming.errors import DirectURLUnavailable, ExtractionFailed, ProcessSpawnError
from streaming.events import log_event
from streaming.process_runner import SpawnFn
from streaming.quality import build_direct_url_opts, build_metadata_opts, render_ytdlp_argv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletedRun:
    argv: tuple[str, ...]
    returncode: int | None
    stdout: bytes
    diagnostics: DiagnosticCollector
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


def _is_http_url(value: str | None) -> bool:
    if not value or not isinstance(value, str):
        return False
    return urlparse(value).scheme in {"http", "https"}


class Extractor:
    def __init__(self, settings: StreamSettings | None = None, *, spawn: SpawnFn | None = None) -> None:
        self.settings = settings or StreamSettings()
        self._spawn = spawn or asyncio.create_subprocess_exec

    async def run(self, argv: Sequence[str], *, timeout: float, label: str = "ytdlp") -> CompletedRun:
        """Run yt-dlp to completion, killing it if ``timeout`` elapses."""
        argv = tuple(str(arg) for arg in argv)
        try:
            proc = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessSpawnError(argv[0], exc) from exc

        diagnostics = DiagnosticCollector(label=label)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs; killing pid=%s", label, timeout, proc.pid)
            self._kill(proc)
            await proc.wait()
            return CompletedRun(argv, proc.returncode, b"", diagnostics, timed_out=True)
        except asyncio.CancelledError:
            self._kill(proc)
            raise

        for line in (stderr or b"").decode("utf-8", errors="replace").splitlines():
            diagnostics.feed(line)
        return CompletedRun(argv, proc.returncode, stdout or b"", diagnostics)

    async def direct_url(self, source_ref: str) -> str:
        opts = build_direct_url_opts(self.settings)
        argv = render_ytdlp_argv(opts, source_ref, binary=self.settings.ytdlp_bin)
        result = await self.run(argv, timeout=self.settings.direct_url_timeout, label="direct-url")
        if result.timed_out:
            raise DirectURLUnavailable(f"direct URL extraction timed out after {self.settings.direct_url_timeout:g}s")
        if result.returncode != 0:
            last_error = result.diagnostics.last_error
            detail = last_error.message if last_error else f"exit code {result.returncode}"
            raise DirectURLUnavailable(f"direct URL extraction failed: {detail}")

        lines = [line.strip() for line in result.stdout.decode("utf-8", errors="replace").splitlines() if line.strip()]
        if len(lines) != 1:
            # Several URLs mean separate audio and video renditions.
            raise DirectURLUnavailable(f"expected one direct URL, got {len(lines)}")
        if not _is_http_url(lines[0]):
            raise DirectURLUnavailable("extractor returned a non-http URL")
        log_event(logging.INFO, "direct_url_extracted", logger=logger, source_ref=source_ref)
        return lines[0]

    async def metadata(self, source_ref: str) -> dict[str, Any]:
        opts = build_metadata_opts(self.settings)
        argv = render_ytdlp_argv(opts, source_ref, binary=self.settings.ytdlp_bin)
        result = await self.run(argv, timeout=self.settings.metadata_timeout, label="metadata")
        if not result.ok:
            last_error = result.diagnostics.last_error
            detail = "timed out" if result.timed_out else (last_error.message if last_error else None)
            raise ExtractionFailed(
                result.returncode,
                reason=result.diagnostics.reason,
                detail=detail,
                source_ref=source_ref,
                mode="metadata",
            )
        try:
            info = json.loads(result.stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise ExtractionFailed(0, detail=f"invalid metadata JSON: {exc}", source_ref=source_ref, mode="metadata") from exc
        if not isinstance(info, dict):
            raise ExtractionFailed(0, detail="metadata is not an object", source_ref=source_ref, mode="metadata")
        return info

    async def version(self) -> str | None:
        """Return the yt-dlp version, or ``None`` when the binary is unusable."""
        try:
            result = await self.run([self.settings.ytdlp_bin, "--version"], timeout=self.settings.version_timeout, label="version")
        except ProcessSpawnError:
            logger.warning("yt-dlp binary %r not found", self.settings.ytdlp_bin)
            return None
        if not result.ok:
            return None
        return result.stdout.decode("utf-8", errors="replace").strip() or None

    @staticmethod
    def _kill(proc) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass
