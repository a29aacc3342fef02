"""
Read-through cache over Redis.

The cache is an optimization only: when Redis is unreachable every lookup
is a miss and every store is a no-op, so callers always fall through to
the upstream provider. Connectivity is tracked by an explicit
CacheAvailability object injected into the store, and is re-probed after
a cool-down instead of being flipped by connection events.
"""

import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from datemaker.core.metrics import cache_lookups_total

logger = logging.getLogger("datemaker")

# Entry lifetimes in seconds
GEOCODE_TTL = 30 * 24 * 60 * 60
PLACES_TTL = 24 * 60 * 60
EVENTS_TTL = 6 * 60 * 60
PHOTO_TTL = 7 * 24 * 60 * 60


def cache_key(prefix: str, *parts: Any, refresh: bool = False) -> str:
    """Build a cache key from request parameters.

    ``None`` renders as an empty segment so absent and empty parameters
    share an entry. With ``refresh`` a unique token is appended, which
    guarantees a miss and stores the fresh result under a key nobody else
    will read.
    """
    segments = [prefix]
    for part in parts:
        if part is None:
            segments.append("")
        elif isinstance(part, bool):
            segments.append("true" if part else "false")
        else:
            segments.append(str(part).strip())
    if refresh:
        segments.append(f"refresh-{uuid.uuid4().hex}")
    return ":".join(segments)


class CacheAvailability:
    """Explicit connectivity state for the cache backend."""

    def __init__(self, retry_seconds: float = 30.0, time_fn: Optional[Callable[[], float]] = None, available: bool = True):
        self.retry_seconds = retry_seconds
        self.time_fn = time_fn or time.monotonic
        self._available = available
        self._down_since: Optional[float] = None if available else self.time_fn()

    def is_available(self) -> bool:
        return self._available

    def probe_due(self) -> bool:
        if self._available or self._down_since is None:
            return False
        return self.time_fn() - self._down_since >= self.retry_seconds

    def mark_up(self) -> None:
        if not self._available:
            logger.info("cache.available")
        self._available = True
        self._down_since = None

    def mark_down(self, reason: str) -> None:
        if self._available:
            logger.warning("cache.unavailable", extra={"reason": reason})
        self._available = False
        self._down_since = self.time_fn()


class RedisCacheStore:
    """JSON get/setex against Redis; every fault degrades to miss or no-op."""

    def __init__(self, client, availability: Optional[CacheAvailability] = None):
        self.client = client
        self.availability = availability or CacheAvailability()

    @classmethod
    def from_url(cls, url: str, availability: Optional[CacheAvailability] = None, timeout_seconds: float = 2.0) -> "RedisCacheStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client, availability)

    async def _ready(self) -> bool:
        if self.availability.is_available():
            return True
        if self.availability.probe_due():
            return await self.ping()
        return False

    async def ping(self) -> bool:
        try:
            await self.client.ping()
        except (RedisError, OSError) as e:
            self.availability.mark_down(e.__class__.__name__)
            return False
        self.availability.mark_up()
        return True

    async def get(self, key: str) -> Optional[Any]:
        if not await self._ready():
            return None
        try:
            raw = await self.client.get(key)
        except (RedisError, OSError) as e:
            self.availability.mark_down(e.__class__.__name__)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache.corrupt_entry", extra={"key": key})
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        if not await self._ready():
            return
        try:
            await self.client.setex(key, ttl, json.dumps(value))
        except (RedisError, OSError) as e:
            self.availability.mark_down(e.__class__.__name__)
        except (TypeError, ValueError):
            logger.warning("cache.unserializable_value", extra={"key": key})

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("cache.close_failed", extra={"reason": e.__class__.__name__})


class ReadThroughCache:
    """Get-or-compute wrapper; a missing store means every call computes."""

    def __init__(self, store: Optional[RedisCacheStore] = None):
        self.store = store

    def is_available(self) -> bool:
        return self.store is not None and self.store.availability.is_available()

    async def get_or_compute(self, key: str, ttl: int, compute: Callable[[], Awaitable[Any]]) -> Any:
        prefix = key.split(":", 1)[0]
        if self.store is not None:
            cached = await self.store.get(key)
            if cached is not None:
                cache_lookups_total.inc(labels={"prefix": prefix, "result": "hit"})
                return cached

        cache_lookups_total.inc(labels={"prefix": prefix, "result": "miss"})
        value = await compute()
        if self.store is not None and value is not None:
            await self.store.set(key, value, ttl)
        return value
