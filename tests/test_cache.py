from __future__ import annotations

from storeassist.cache import InMemoryCache, NamespacedCache


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = InMemoryCache(clock=clock)
    cache.set("k", "v", ttl=10)
    assert cache.get("k") == "v"
    clock.now = 10.5
    assert cache.get("k") is None
    assert len(cache) == 0


def test_namespaces_are_isolated():
    shared = InMemoryCache()
    search = NamespacedCache(shared, "search", default_ttl=300)
    response = NamespacedCache(shared, "response", default_ttl=3600)
    search.set("q", [1])
    response.set("q", "answer")
    assert search.clear() == 1
    assert search.get("q") is None
    assert response.get("q") == "answer"


def test_eviction_keeps_cache_bounded():
    cache = InMemoryCache(max_entries=10)
    for index in range(25):
        cache.set(str(index), index)
    assert len(cache) <= 10
    assert cache.get("24") == 24


def test_delete_reports_presence():
    cache = InMemoryCache()
    cache.set("a", 1)
    assert cache.delete("a")
    assert not cache.delete("a")
