"""Unit tests for the TTL cache."""

import threading

import pytest

from spendguard.core.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(ttl_seconds=10, clock=clock)


def test_invalid_ttl():
    with pytest.raises(ValueError):
        TTLCache(ttl_seconds=0)


def test_put_and_get(cache, clock):
    """Values are fresh until their TTL passes."""
    cache.put("a", 1)
    assert cache.get("a") == 1
    assert "a" in cache

    clock.now = 10.0
    assert cache.get("a") is None
    assert cache.get("a", "default") == "default"
    assert "a" not in cache


def test_peek_returns_stale_entries(cache, clock):
    """peek serves expired entries for stale-while-revalidate callers."""
    cache.put("a", 1)
    clock.now = 20.0

    entry = cache.peek("a")
    assert entry is not None
    assert entry.value == 1
    assert not entry.is_fresh(cache.now())
    assert cache.stats.stale_hits == 1


def test_get_or_load_caches_value(cache):
    """The loader runs once while the value is fresh."""
    calls = []

    def loader():
        calls.append(1)
        return "loaded"

    assert cache.get_or_load("k", loader) == "loaded"
    assert cache.get_or_load("k", loader) == "loaded"
    assert len(calls) == 1
    assert cache.stats.loads == 1
    assert cache.stats.hits == 1


def test_get_or_load_reloads_after_expiry(cache, clock):
    values = iter([1, 2])
    assert cache.get_or_load("k", lambda: next(values)) == 1
    clock.now = 11.0
    assert cache.get_or_load("k", lambda: next(values)) == 2


def test_loader_error_is_not_cached(cache):
    def failing():
        raise RuntimeError("store down")

    with pytest.raises(RuntimeError):
        cache.get_or_load("k", failing)
    assert len(cache) == 0


def test_invalidate_single_key(cache):
    """Invalidation touches exactly one key."""
    cache.put("a", 1)
    cache.put("b", 2)

    assert cache.invalidate("a") is True
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.invalidate("a") is False
    assert cache.stats.invalidations == 2


def test_stale_put_is_rejected_after_invalidation(cache):
    """A load that started before an invalidation cannot write back."""
    generation = cache.generation("a")
    cache.invalidate("a")

    assert cache.put("a", "stale", generation=generation) is False
    assert cache.get("a") is None
    assert cache.put("a", "fresh", generation=cache.generation("a")) is True
    assert cache.get("a") == "fresh"


def test_invalidation_during_load_is_not_overwritten(cache):
    """The loader's result is returned but not cached when the key was invalidated mid-load."""

    def loader():
        cache.invalidate("k")
        return "old"

    assert cache.get_or_load("k", loader) == "old"
    assert cache.get("k") is None


def test_clear(cache):
    cache.put("a", 1)
    cache.put("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_concurrent_loads_of_different_keys():
    """Different keys can be loaded and invalidated from many threads."""
    cache = TTLCache(ttl_seconds=60)
    errors = []

    def work(i):
        try:
            for n in range(50):
                key = (i, n % 5)
                cache.get_or_load(key, lambda: n)
                cache.invalidate(key)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=work, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert cache.stats.as_dict()["invalidations"] == 8 * 50


def test_put_with_zero_ttl_is_stale(cache):
    """An entry stored with ttl 0 is only reachable through peek."""
    cache.put("a", 1, ttl_seconds=0)
    assert cache.get("a") is None
    assert cache.peek("a").value == 1
