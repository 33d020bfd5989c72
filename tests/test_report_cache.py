"""Tests for the report cache."""

from benefits_engine.reports.cache import NullReportCache, TTLReportCache, make_cache_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCacheKey:
    """Test cache key derivation."""

    def test_key_ignores_param_order(self):
        assert make_cache_key("trend-analysis", {"a": 1, "b": "x"}) == make_cache_key(
            "trend-analysis", {"b": "x", "a": 1}
        )

    def test_key_depends_on_kind_and_values(self):
        base = make_cache_key("claims-summary", {"year": 2024})
        assert base.startswith("claims-summary:")
        assert base != make_cache_key("claims-summary", {"year": 2025})
        assert base != make_cache_key("budget-vs-actual", {"year": 2024})


class TestTTLReportCache:
    """Test expiry and hit accounting."""

    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = TTLReportCache(clock=clock)
        calls = []

        def build():
            calls.append(1)
            return {"total": 1}

        first = cache.get_or_set("k", 300, build)
        clock.now += 299
        second = cache.get_or_set("k", 300, build)

        assert second is first
        assert len(calls) == 1
        assert (cache.hits, cache.misses) == (1, 1)

    def test_expired_entry_is_rebuilt(self):
        clock = FakeClock()
        cache = TTLReportCache(clock=clock)

        cache.get_or_set("k", 300, lambda: {"v": 1})
        clock.now += 300
        value = cache.get_or_set("k", 300, lambda: {"v": 2})

        assert value == {"v": 2}
        assert cache.misses == 2

    def test_default_ttl_and_clear(self):
        clock = FakeClock()
        cache = TTLReportCache(default_ttl=10, clock=clock)

        cache.set("k", "value")
        assert cache.get("k") == "value"
        assert len(cache) == 1

        cache.clear()
        assert cache.get("k") is None

    def test_set_drops_expired_entries(self):
        clock = FakeClock()
        cache = TTLReportCache(clock=clock)

        cache.set("stale", "a", 60)
        cache.set("fresh", "b", 600)
        clock.now += 60
        cache.set("new", "c", 300)

        assert len(cache) == 2
        assert cache.get("stale") is None
        assert cache.get("fresh") == "b"

    def test_null_cache_always_builds(self):
        cache = NullReportCache()
        values = iter([1, 2])

        assert cache.get_or_set("k", 300, lambda: next(values)) == 1
        assert cache.get_or_set("k", 300, lambda: next(values)) == 2
