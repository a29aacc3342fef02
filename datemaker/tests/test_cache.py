import pytest

from datemaker.core.cache import (
    CacheAvailability,
    ReadThroughCache,
    RedisCacheStore,
    cache_key,
)
from datemaker.core.metrics import cache_lookups_total
from datemaker.tests.mocks import FakeRedis, FakeTime


def _cache(redis=None, clock=None):
    redis = redis or FakeRedis()
    availability = CacheAvailability(retry_seconds=30, time_fn=clock or FakeTime())
    return ReadThroughCache(RedisCacheStore(redis, availability)), redis


class Upstream:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


def test_cache_key_normalizes_parameters():
    assert cache_key("places", 40.7, -74.0, None, " sushi ", False) == "places:40.7:-74.0::sushi:false"
    assert cache_key("places", 1, 2, None) == cache_key("places", 1, 2, None)


def test_refresh_keys_never_collide():
    first = cache_key("places", 1, 2, refresh=True)
    second = cache_key("places", 1, 2, refresh=True)
    assert first != second
    assert first.startswith("places:1:2:refresh-")


@pytest.mark.asyncio
async def test_miss_then_hit_calls_upstream_once():
    cache, redis = _cache()
    upstream = Upstream({"results": [1, 2]})

    first = await cache.get_or_compute("places:k", 60, upstream)
    second = await cache.get_or_compute("places:k", 60, upstream)

    assert first == second == {"results": [1, 2]}
    assert upstream.calls == 1
    assert redis.ttls["places:k"] == 60
    assert cache_lookups_total.value(labels={"prefix": "places", "result": "hit"}) == 1
    assert cache_lookups_total.value(labels={"prefix": "places", "result": "miss"}) == 1


@pytest.mark.asyncio
async def test_none_results_are_not_cached():
    cache, redis = _cache()
    upstream = Upstream(None)

    await cache.get_or_compute("geocode:x", 60, upstream)
    await cache.get_or_compute("geocode:x", 60, upstream)

    assert upstream.calls == 2
    assert "geocode:x" not in redis.store


@pytest.mark.asyncio
async def test_unavailable_store_falls_through_to_upstream():
    redis = FakeRedis()
    redis.fail = True
    cache, _ = _cache(redis)
    upstream = Upstream({"ok": True})

    assert await cache.get_or_compute("places:k", 60, upstream) == {"ok": True}
    assert await cache.get_or_compute("places:k", 60, upstream) == {"ok": True}

    assert upstream.calls == 2
    assert cache.is_available() is False


@pytest.mark.asyncio
async def test_store_is_reprobed_after_cooldown():
    clock = FakeTime()
    redis = FakeRedis()
    cache, _ = _cache(redis, clock)
    upstream = Upstream({"ok": True})

    redis.fail = True
    await cache.get_or_compute("places:k", 60, upstream)
    assert cache.is_available() is False

    redis.fail = False
    clock.advance(10)
    await cache.get_or_compute("places:k", 60, upstream)
    assert redis.pings == 0
    assert "places:k" not in redis.store

    clock.advance(30)
    await cache.get_or_compute("places:k", 60, upstream)
    assert redis.pings == 1
    assert cache.is_available() is True
    assert "places:k" in redis.store


@pytest.mark.asyncio
async def test_no_store_always_computes():
    cache = ReadThroughCache()
    upstream = Upstream([1])

    await cache.get_or_compute("events:k", 60, upstream)
    await cache.get_or_compute("events:k", 60, upstream)

    assert upstream.calls == 2
    assert cache.is_available() is False


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss():
    cache, redis = _cache()
    redis.store["photo:abc"] = "{not json"
    upstream = Upstream({"url": "https://example.test/p.jpg"})

    assert await cache.get_or_compute("photo:abc", 60, upstream) == {"url": "https://example.test/p.jpg"}
    assert upstream.calls == 1


@pytest.mark.asyncio
async def test_close_releases_client():
    redis = FakeRedis()
    store = RedisCacheStore(redis)
    await store.close()
    assert redis.closed is True
