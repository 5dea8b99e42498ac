"""Tests for ExpiringCache and the timestamp helpers."""

import pytest

from notebackup.sync.caches import ExpiringCache, iso_timestamp


class TestExpiringCache:
    def test_set_and_get(self, clock):
        cache = ExpiringCache(clock=clock)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert cache.get("missing") is None

    def test_ttl_expiry(self, clock):
        cache = ExpiringCache(ttl_ms=1000, clock=clock)
        cache.set("a", 1)
        clock.advance(1000)
        assert cache.get("a") == 1
        clock.advance(1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_no_ttl_never_expires(self, clock):
        cache = ExpiringCache(clock=clock)
        cache.set("a", 1)
        clock.advance(10**9)
        assert cache.get("a") == 1

    def test_evicts_oldest_beyond_bound(self, clock):
        cache = ExpiringCache(max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        cache.set("c", 4)
        assert list(cache) == ["a", "c"]

    def test_delete_and_clear(self, clock):
        cache = ExpiringCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.delete("never-set")
        assert list(cache) == ["b"]
        cache.clear()
        assert len(cache) == 0

    def test_purge_expired(self, clock):
        cache = ExpiringCache(ttl_ms=10, clock=clock)
        cache.set("old", 1)
        clock.advance(20)
        cache.set("new", 2)
        assert cache.purge_expired() == 1
        assert list(cache) == ["new"]

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            ExpiringCache(max_entries=0)


def test_iso_timestamp():
    assert iso_timestamp(0) == "1970-01-01T00:00:00.000Z"
    assert iso_timestamp(1_500) == "1970-01-01T00:00:01.500Z"
