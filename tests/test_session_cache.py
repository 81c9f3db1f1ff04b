"""Tests for the bounded TTL session cache."""

import threading

import pytest

from errorwatch.auth.session_cache import Principal, SessionCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


def test_put_then_get(clock):
    cache = SessionCache(ttl_seconds=30, clock=clock)
    cache.put("tok", Principal(id="u1"))
    assert cache.get("tok") == Principal(id="u1")
    assert cache.stats()["hits"] == 1


def test_miss_returns_none(clock):
    cache = SessionCache(clock=clock)
    assert cache.get("nope") is None
    assert cache.stats()["misses"] == 1


def test_entry_expires_after_ttl(clock):
    cache = SessionCache(ttl_seconds=30, clock=clock)
    cache.put("tok", Principal(id="u1"))

    clock.advance(29.9)
    assert cache.get("tok") is not None

    clock.advance(0.2)
    assert cache.get("tok") is None
    assert len(cache) == 0  # evicted lazily on lookup


def test_invalidate_removes_entry(clock):
    cache = SessionCache(clock=clock)
    cache.put("tok", Principal(id="u1"))
    cache.invalidate("tok")
    assert cache.get("tok") is None
    cache.invalidate("never-there")  # no error


def test_capacity_two_evicts_exactly_one_of_first_two(clock):
    cache = SessionCache(max_size=2, clock=clock)
    cache.put("A", Principal(id="a"))
    cache.put("B", Principal(id="b"))
    cache.put("C", Principal(id="c"))

    assert len(cache) == 2
    assert cache.get("C") == Principal(id="c")
    survivors = [t for t in ("A", "B") if cache.get(t) is not None]
    assert len(survivors) == 1


def test_reput_refreshes_without_growing(clock):
    cache = SessionCache(max_size=2, ttl_seconds=30, clock=clock)
    cache.put("A", Principal(id="a"))
    clock.advance(20)
    cache.put("A", Principal(id="a2"))
    clock.advance(20)

    assert len(cache) == 1
    assert cache.get("A") == Principal(id="a2")


def test_invalid_max_size():
    with pytest.raises(ValueError):
        SessionCache(max_size=0)


def test_concurrent_puts_stay_bounded():
    cache = SessionCache(max_size=50)

    def writer(offset: int):
        for i in range(500):
            cache.put(f"{offset}-{i}", Principal(id=str(i)))
            cache.get(f"{offset}-{i}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) <= 50
