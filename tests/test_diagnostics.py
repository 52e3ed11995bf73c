from __future__ import annotations

import pytest

from streaming.diagnostics import DiagnosticCollector, classify_diagnostic, failure_reason


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("ERROR: [youtube] abc: The uploader has not made this video available in your country", "geo_restricted"),
        ("ERROR: [youtube] abc: Video unavailable", "unavailable"),
        ("ERROR: [youtube] abc: Requested format is not available", "unavailable"),
        ("ERROR: [youtube] abc: Sign in to confirm your age", "auth"),
        ("ERROR: Unable to download webpage: <urlopen error timed out>", "network"),
        ("ERROR: something nobody anticipated", "unknown"),
        ("", "unknown"),
    ],
)
def test_classify_diagnostic(line, expected) -> None:
    assert classify_diagnostic(line) == expected


def test_auth_failures_are_reported_as_unavailable() -> None:
    assert failure_reason("auth") == "unavailable"
    assert failure_reason("network") == "network"
    assert failure_reason("bogus") == "unknown"
    assert failure_reason(None) == "unknown"


def test_collector_keeps_last_error_and_tail() -> None:
    collector = DiagnosticCollector(label="fast", max_lines=3)
    collector.feed("[youtube] abc: Downloading webpage\n")
    collector.feed("ERROR: [youtube] abc: Video unavailable\n")
    collector.feed("WARNING: retrying\n")
    collector.feed("")
    collector.feed("[info] done\n")

    assert collector.last_error is not None
    assert collector.last_error.category == "unavailable"
    assert collector.reason == "unavailable"
    assert collector.tail(10).splitlines() == [
        "ERROR: [youtube] abc: Video unavailable",
        "WARNING: retrying",
        "[info] done",
    ]


def test_collector_without_errors_has_unknown_reason() -> None:
    collector = DiagnosticCollector()
    collector.feed("[download] 10.0% of 5.00MiB")

    assert collector.last_error is None
    assert collector.reason == "unknown"
