import pytest

from apps.backend.docquiz.cache import TTLCache

from conftest import FakeClock


def test_entries_expire_by_clock():
    clock = FakeClock()
    cache = TTLCache(max_entries=4, ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    clock.advance(9.9)
    assert cache.get("a") == 1
    clock.advance(0.2)
    assert cache.get("a") is None
    assert "a" not in cache


def test_least_recently_used_is_evicted():
    cache = TTLCache(max_entries=2, ttl_seconds=10, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_get_or_create_memoises():
    cache = TTLCache(clock=FakeClock())
    calls = []

    def factory():
        calls.append(1)
        return "value"

    assert cache.get_or_create("k", factory) == "value"
    assert cache.get_or_create("k", factory) == "value"
    assert len(calls) == 1
    cache.invalidate("k")
    cache.get_or_create("k", factory)
    assert len(calls) == 2


def test_falsy_values_are_cached():
    cache = TTLCache(clock=FakeClock())
    cache.set("empty", [])
    assert cache.get_or_create("empty", lambda: ["rebuilt"]) == []


def test_clear_and_invalid_settings():
    cache = TTLCache(clock=FakeClock())
    cache.set("a", 1)
    cache.clear()
    assert len(cache) == 0
    with pytest.raises(ValueError):
        TTLCache(max_entries=0)
    with pytest.raises(ValueError):
        TTLCache(ttl_seconds=0)
