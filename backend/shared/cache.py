"""In-process TTL cache with a last-known-good fallback.

Channel ids and open stream sessions are read far more often than they
change. Fresh values expire after ``ttl``; the latest successful value for
each key is also kept in a bounded LRU so that a lookup which keeps failing
(Twitch GQL outage, database blip) can still answer with what it knew.
"""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from cachetools import LRUCache, TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

# Distinguishes "not cached" from a cached None
_MISSING = object()

F = TypeVar("F", bound=Callable[..., Any])


class AsyncTTLCache:
    """Fresh ``TTLCache`` tier over a last-known-good ``LRUCache`` tier.

    ``load`` serializes concurrent loads of the same key, so a burst of
    lookups for one login costs a single upstream request.
    """

    def __init__(self, maxsize: int = 128, ttl: float = 60.0):
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._known: LRUCache = LRUCache(maxsize=maxsize)
        self._locks: LRUCache = LRUCache(maxsize=maxsize * 2)

    def get(self, key: str) -> Any:
        """Return the fresh value or ``_MISSING``."""
        return self._fresh.get(key, _MISSING)

    def get_stale(self, key: str) -> Any:
        """Return the last known value, expired or not, or ``_MISSING``."""
        return self._known.get(key, _MISSING)

    def set(self, key: str, value: Any) -> None:
        self._fresh[key] = value
        self._known[key] = value

    def invalidate(self, key: str) -> None:
        """Drop the fresh value; the last known value survives."""
        self._fresh.pop(key, None)

    def clear(self) -> None:
        """Expire every fresh value; last known values survive."""
        self._fresh.clear()

    def reset(self) -> None:
        """Forget everything."""
        self._fresh.clear()
        self._known.clear()
        self._locks.clear()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        retry: int = 2,
        retry_delay: float = 1.0,
    ) -> Any:
        """Return the fresh value for *key*, calling *loader* on a miss.

        *loader* is attempted up to *retry* times, sleeping
        ``retry_delay * attempt`` in between. When every attempt fails the
        last known value is returned, or the last error re-raised if there is
        none.
        """
        value = self.get(key)
        if value is not _MISSING:
            return value

        async with self._lock_for(key):
            value = self.get(key)
            if value is not _MISSING:
                return value

            attempts = max(retry, 1)
            for attempt in range(1, attempts + 1):
                try:
                    value = await loader()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if attempt == attempts:
                        known = self.get_stale(key)
                        if known is _MISSING:
                            raise
                        logger.warning(f"Serving last known value for {key} ({type(e).__name__})")
                        return known
                    delay = retry_delay * attempt
                    logger.warning(
                        f"Lookup {key} failed ({type(e).__name__}), "
                        f"attempt {attempt}/{attempts}, retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                self.set(key, value)
                return value


def cached(
    cache: AsyncTTLCache,
    key_func: Callable[..., str],
    *,
    retry: int = 2,
    retry_delay: float = 1.0,
):
    """Cache an async lookup in *cache* under ``key_func(*args, **kwargs)``.

    See ``AsyncTTLCache.load`` for the retry and fallback rules.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await cache.load(
                key_func(*args, **kwargs),
                lambda: func(*args, **kwargs),
                retry=retry,
                retry_delay=retry_delay,
            )

        wrapper.cache = cache  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
