"""State of one extraction process.

A session moves ``starting -> streaming -> {completed, killed, failed}``
(or straight from ``starting`` to ``killed``/``failed``). ``transition`` is
the only place the state changes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from streaming.diagnostics import LastError


class SessionState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    KILLED = "killed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.KILLED, SessionState.FAILED})

_ALLOWED_TRANSITIONS = {
    SessionState.STARTING: frozenset({SessionState.STREAMING, SessionState.KILLED, SessionState.FAILED}),
    SessionState.STREAMING: frozenset({SessionState.COMPLETED, SessionState.KILLED, SessionState.FAILED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.KILLED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class StreamSession:
    source_ref: str
    mode: str
    started_at: float = field(default_factory=time.monotonic)
    pid: int | None = None
    state: SessionState = SessionState.STARTING
    ready: bool = False
    bytes_out: int = 0
    exit_code: int | None = None
    first_byte_at: float | None = None
    finished_at: float | None = None
    last_error: LastError | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: SessionState, *, exit_code: int | None = None) -> bool:
        """Move to ``new_state``.

        Returns ``False`` when the session already reached a terminal state
        (a late exit after a kill, for example). Any other disallowed move
        raises ``InvalidTransition``.
        """
        if self.terminal:
            if exit_code is not None and self.exit_code is None:
                self.exit_code = exit_code
            return False
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        now = time.monotonic()
        if new_state is SessionState.STREAMING:
            self.ready = True
            self.first_byte_at = now
        if new_state in TERMINAL_STATES:
            self.finished_at = now
            if exit_code is not None:
                self.exit_code = exit_code
        self.state = new_state
        return True

    def record_bytes(self, count: int) -> None:
        self.bytes_out += count

    @property
    def time_to_first_byte_ms(self) -> int | None:
        if self.first_byte_at is None:
            return None
        return int((self.first_byte_at - self.started_at) * 1000)

    def summary(self) -> dict[str, Any]:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return {
            "source_ref": self.source_ref,
            "mode": self.mode,
            "pid": self.pid,
            "state": self.state.value,
            "ready": self.ready,
            "bytes_out": self.bytes_out,
            "exit_code": self.exit_code,
            "ttfb_ms": self.time_to_first_byte_ms,
            "elapsed_ms": int((end - self.started_at) * 1000),
            "last_error": self.last_error.as_dict() if self.last_error else None,
        }
