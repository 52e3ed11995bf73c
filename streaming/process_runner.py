"""Supervision of one yt-dlp process whose stdout is the media stream."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import signal
from typing import AsyncIterator, Awaitable, Callable, Sequence

from streaming.diagnostics import DiagnosticCollector, LastError
from streaming.errors import ExtractionFailed, ProcessSpawnError, StreamInitTimeout
from streaming.events import log_event
from streaming.session import SessionState, StreamSession

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_KILL_GRACE_SEC = 3.0
_STDERR_JOIN_TIMEOUT = 1.0

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]
Observer = Callable[[StreamSession], None]


class ProcessRunner:
    """Owns exactly one extractor process and exposes its stdout.

    ``start()`` suspends until the first output byte, the startup deadline,
    or an early exit. The returned async iterator yields every chunk as-is;
    closing it, leaving ``async with`` or calling ``kill()`` terminates the
    process if it is still running.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        source_ref: str,
        mode: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        kill_grace_sec: float = DEFAULT_KILL_GRACE_SEC,
        spawn: SpawnFn | None = None,
        process_group: bool = True,
    ) -> None:
        if not argv:
            raise ValueError("argv must not be empty")
        self._argv = [str(arg) for arg in argv]
        self._chunk_size = chunk_size
        self._kill_grace_sec = kill_grace_sec
        self._spawn = spawn or asyncio.create_subprocess_exec
        # A separate process group lets kill() reach the ffmpeg child yt-dlp
        # starts for merges.
        self._process_group = process_group and hasattr(os, "killpg")
        self.session = StreamSession(source_ref=source_ref, mode=mode)
        self._diagnostics = DiagnosticCollector(label=mode)
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._kill_task: asyncio.Future | None = None
        self._first_chunk: bytes | None = None
        self._started = False
        self._notified = False
        self._observers: list[Observer] = []

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def last_error(self) -> LastError | None:
        return self._diagnostics.last_error

    def add_observer(self, observer: Observer) -> None:
        """Register a callback invoked once with the final session after exit."""
        self._observers.append(observer)

    async def __aenter__(self) -> "ProcessRunner":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.kill()

    async def start(self, startup_timeout: float) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError("ProcessRunner.start() may only be called once")
        self._started = True
        source_ref = self.session.source_ref
        mode = self.session.mode

        kwargs = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if self._process_group:
            kwargs["start_new_session"] = True
        try:
            self._proc = await self._spawn(*self._argv, **kwargs)
        except OSError as exc:
            self.session.transition(SessionState.FAILED)
            self._notify()
            raise ProcessSpawnError(self._argv[0], exc) from exc

        self.session.pid = self._proc.pid
        logger.debug("extractor argv: %s", shlex.join(self._argv))
        log_event(logging.INFO, "extractor_spawned", logger=logger, pid=self._proc.pid, mode=mode, source_ref=source_ref)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

        try:
            chunk = await asyncio.wait_for(self._proc.stdout.read(self._chunk_size), timeout=startup_timeout)
        except asyncio.TimeoutError:
            logger.error("%s stream produced no data after %.1fs; killing pid=%s", mode, startup_timeout, self.pid)
            await self._force_kill()
            raise StreamInitTimeout(source_ref, startup_timeout, mode=mode) from None
        except asyncio.CancelledError:
            self._schedule_kill()
            raise

        if not chunk:
            killed = self.session.state is SessionState.KILLED
            await self._reap(SessionState.FAILED)
            detail = "killed before producing output" if killed else self._failure_detail()
            raise ExtractionFailed(
                self.session.exit_code,
                reason=self._diagnostics.reason,
                detail=detail,
                source_ref=source_ref,
                mode=mode,
            )

        self.session.transition(SessionState.STREAMING)
        self.session.record_bytes(len(chunk))
        self._first_chunk = chunk
        log_event(
            logging.INFO,
            "extractor_first_byte",
            logger=logger,
            pid=self.pid,
            mode=mode,
            ttfb_ms=self.session.time_to_first_byte_ms,
        )
        return self._iter_output()

    async def _iter_output(self) -> AsyncIterator[bytes]:
        chunk, self._first_chunk = self._first_chunk, None
        proc = self._proc
        try:
            yield chunk
            while True:
                chunk = await proc.stdout.read(self._chunk_size)
                if not chunk:
                    break
                self.session.record_bytes(len(chunk))
                yield chunk
            returncode = await proc.wait()
            if returncode != 0 and self.session.state is SessionState.STREAMING:
                logger.warning(
                    "extractor pid=%s exited with %s after %d bytes; output truncated",
                    proc.pid,
                    returncode,
                    self.session.bytes_out,
                )
            await self._reap(SessionState.COMPLETED if returncode == 0 else SessionState.FAILED)
        finally:
            if proc.returncode is None:
                self._schedule_kill()

    async def kill(self) -> None:
        """Terminate the process: SIGTERM, then SIGKILL after the grace window.

        Idempotent, and safe to call from any task. Cancelling the caller
        does not interrupt the termination itself.
        """
        if self._proc is None:
            return
        if self._kill_task is None:
            self._kill_task = asyncio.ensure_future(self._terminate())
        await asyncio.shield(self._kill_task)

    def _schedule_kill(self) -> None:
        if self._proc is None or self._kill_task is not None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Finalised outside a running loop: nothing to await on.
            self._send_signal(force=True)
            return
        self._kill_task = asyncio.ensure_future(self._terminate())

    async def _terminate(self) -> None:
        proc = self._proc
        if proc.returncode is not None:
            return
        self.session.transition(SessionState.KILLED)
        log_event(logging.INFO, "extractor_kill_requested", logger=logger, pid=proc.pid, mode=self.session.mode)
        self._send_signal(force=False)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace_sec)
        except asyncio.TimeoutError:
            logger.warning("extractor pid=%s still running after %.1fs; sending SIGKILL", proc.pid, self._kill_grace_sec)
            self._send_signal(force=True)
        await self._reap(SessionState.KILLED)

    async def _force_kill(self) -> None:
        self.session.transition(SessionState.FAILED)
        self._send_signal(force=True)
        await self._reap(SessionState.FAILED)

    def _send_signal(self, *, force: bool) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        sig = signal.SIGKILL if force and hasattr(signal, "SIGKILL") else signal.SIGTERM
        if self._process_group:
            try:
                os.killpg(proc.pid, sig)
                return
            except ProcessLookupError:
                return
            except PermissionError:
                logger.debug("killpg denied for pid=%s; signalling the process only", proc.pid)
        with contextlib.suppress(ProcessLookupError):
            if force:
                proc.kill()
            else:
                proc.terminate()

    async def _reap(self, state: SessionState) -> None:
        returncode = await self._proc.wait()
        await self._join_stderr()
        self.session.last_error = self._diagnostics.last_error
        self.session.transition(state, exit_code=returncode)
        self._notify()

    async def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; the buffer was discarded.
                continue
            if not raw:
                break
            self._diagnostics.feed(raw.decode("utf-8", errors="replace"))

    async def _join_stderr(self) -> None:
        task = self._stderr_task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=_STDERR_JOIN_TIMEOUT)
        except asyncio.TimeoutError:
            task.cancel()
        except Exception:
            logger.exception("stderr reader failed pid=%s", self.pid)

    def _failure_detail(self) -> str | None:
        if self._diagnostics.last_error is not None:
            return self._diagnostics.last_error.message
        return self._diagnostics.tail(3) or None

    def _notify(self) -> None:
        if self._notified:
            return
        self._notified = True
        self.session.last_error = self._diagnostics.last_error
        level = logging.WARNING if self.session.state is SessionState.FAILED else logging.INFO
        log_event(level, "extractor_finished", logger=logger, **self.session.summary())
        for observer in list(self._observers):
            try:
                observer(self.session)
            except Exception:
                logger.exception("stream_observer_failed")
