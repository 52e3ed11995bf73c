from __future__ import annotations

import pytest

from streaming.session import InvalidTransition, SessionState, StreamSession


def test_session_starts_not_ready() -> None:
    session = StreamSession(source_ref="src", mode="fast")

    assert session.state is SessionState.STARTING
    assert session.ready is False
    assert session.time_to_first_byte_ms is None


def test_streaming_marks_ready_and_records_first_byte() -> None:
    session = StreamSession(source_ref="src", mode="best")

    assert session.transition(SessionState.STREAMING) is True
    assert session.ready is True
    assert session.time_to_first_byte_ms is not None


def test_terminal_state_is_sticky_but_fills_exit_code() -> None:
    session = StreamSession(source_ref="src", mode="fast")
    session.transition(SessionState.KILLED)

    assert session.transition(SessionState.FAILED, exit_code=-15) is False
    assert session.state is SessionState.KILLED
    assert session.exit_code == -15


def test_cannot_go_back_to_starting() -> None:
    session = StreamSession(source_ref="src", mode="fast")
    session.transition(SessionState.STREAMING)

    with pytest.raises(InvalidTransition):
        session.transition(SessionState.STARTING)


def test_summary_reports_bytes_and_state() -> None:
    session = StreamSession(source_ref="src", mode="fast", pid=42)
    session.transition(SessionState.STREAMING)
    session.record_bytes(10)
    session.record_bytes(5)
    session.transition(SessionState.COMPLETED, exit_code=0)

    summary = session.summary()
    assert summary["state"] == "completed"
    assert summary["bytes_out"] == 15
    assert summary["exit_code"] == 0
    assert summary["pid"] == 42
    assert summary["last_error"] is None
