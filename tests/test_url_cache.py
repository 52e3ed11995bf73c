from __future__ import annotations

import time

import pytest

from streaming.url_cache import URLCache


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_get_returns_entry_before_expiry() -> None:
    clock = _Clock()
    cache = URLCache(60, clock=clock)
    cache.put("https://www.youtube.com/watch?v=abc", "https://cdn.example/a.mp4")

    clock.now += 59.9
    assert cache.get("https://www.youtube.com/watch?v=abc") == "https://cdn.example/a.mp4"


def test_entry_is_absent_at_and_after_expiry() -> None:
    clock = _Clock()
    cache = URLCache(60, clock=clock)
    entry = cache.put("src", "https://cdn.example/a.mp4")
    assert entry.expires_at == entry.extracted_at + 60

    clock.now += 60
    assert cache.get("src") is None
    assert len(cache) == 0


def test_put_overwrites_and_restarts_ttl() -> None:
    clock = _Clock()
    cache = URLCache(60, clock=clock)
    cache.put("src", "https://cdn.example/old.mp4")
    clock.now += 50
    cache.put("src", "https://cdn.example/new.mp4")
    clock.now += 50

    assert cache.get("src") == "https://cdn.example/new.mp4"
    assert len(cache) == 1


def test_full_cache_evicts_entry_closest_to_expiry() -> None:
    clock = _Clock()
    cache = URLCache(60, max_entries=2, clock=clock)
    cache.put("first", "https://cdn.example/1")
    clock.now += 1
    cache.put("second", "https://cdn.example/2")
    clock.now += 1
    cache.put("third", "https://cdn.example/3")

    assert cache.get("first") is None
    assert cache.get("second") == "https://cdn.example/2"
    assert cache.get("third") == "https://cdn.example/3"


def test_invalidate_and_purge_expired() -> None:
    clock = _Clock()
    cache = URLCache(10, clock=clock)
    cache.put("a", "https://cdn.example/a")
    cache.put("b", "https://cdn.example/b")

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False

    clock.now += 11
    assert cache.purge_expired() == 1
    assert len(cache) == 0


def test_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError):
        URLCache(0)


def test_default_clock_ignores_wall_clock_jumps(monkeypatch) -> None:
    clock = _Clock()
    monkeypatch.setattr(time, "monotonic", clock)
    cache = URLCache(60)
    cache.put("ref", "https://cdn.example/v.mp4")

    monkeypatch.setattr(time, "time", lambda: 4_000_000_000.0)
    assert cache.get("ref") == "https://cdn.example/v.mp4"

    clock.now += 60
    assert cache.get("ref") is None
