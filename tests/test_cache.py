"""Tests for the TTL cache and its last-known-good fallback."""

import asyncio

import pytest

from shared.cache import _MISSING, AsyncTTLCache, cached


class Lookup:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, key: str):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


async def test_hit_skips_loader():
    cache = AsyncTTLCache(ttl=60)
    lookup = Lookup(["123"])
    cached_lookup = cached(cache, key_func=lambda key: key, retry=1)(lookup)

    assert await cached_lookup("alpha") == "123"
    assert await cached_lookup("alpha") == "123"
    assert lookup.calls == 1


async def test_none_is_cached():
    cache = AsyncTTLCache()
    lookup = Lookup([None])
    cached_lookup = cached(cache, key_func=lambda key: key, retry=1)(lookup)

    await cached_lookup("ghost")
    await cached_lookup("ghost")
    assert lookup.calls == 1


async def test_retries_before_giving_up():
    cache = AsyncTTLCache()
    lookup = Lookup([RuntimeError("down"), "123"])
    cached_lookup = cached(cache, key_func=lambda key: key, retry=2, retry_delay=0)(lookup)

    assert await cached_lookup("alpha") == "123"
    assert lookup.calls == 2


async def test_last_known_value_served_when_loader_fails():
    cache = AsyncTTLCache()
    lookup = Lookup(["123", RuntimeError("down")])
    cached_lookup = cached(cache, key_func=lambda key: key, retry=1)(lookup)

    await cached_lookup("alpha")
    cache.clear()

    assert cache.get("alpha") is _MISSING
    assert await cached_lookup("alpha") == "123"


async def test_error_raised_without_known_value():
    cache = AsyncTTLCache()
    cached_lookup = cached(cache, key_func=lambda key: key, retry=1)(Lookup([RuntimeError("down")]))

    with pytest.raises(RuntimeError):
        await cached_lookup("alpha")


async def test_concurrent_misses_share_one_load():
    cache = AsyncTTLCache()
    calls = 0

    async def slow(key: str):
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return key.upper()

    cached_lookup = cached(cache, key_func=lambda key: key, retry=1)(slow)
    results = await asyncio.gather(*(cached_lookup("alpha") for _ in range(5)))

    assert results == ["ALPHA"] * 5
    assert calls == 1


def test_invalidate_keeps_last_known_value():
    cache = AsyncTTLCache()
    cache.set("open:1", 7)
    cache.invalidate("open:1")

    assert cache.get("open:1") is _MISSING
    assert cache.get_stale("open:1") == 7

    cache.reset()
    assert cache.get_stale("open:1") is _MISSING


async def test_last_attempt_error_propagates():
    cache = AsyncTTLCache()
    lookup = Lookup([RuntimeError("first"), ValueError("last")])

    with pytest.raises(ValueError, match="last"):
        await cache.load("alpha", lambda: lookup("alpha"), retry=2, retry_delay=0)
    assert lookup.calls == 2


async def test_zero_retry_still_loads_once():
    cache = AsyncTTLCache()
    lookup = Lookup(["123"])

    assert await cache.load("alpha", lambda: lookup("alpha"), retry=0) == "123"
    assert lookup.calls == 1
