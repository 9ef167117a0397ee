"""In-memory TTL cache owned by a provider client instance."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Hashable

_MISSING = object()


class TTLCache:
    """Key -> (value, expiry) map, safe for concurrent coroutine access.

    `get_or_load` serializes loaders per key, so concurrent misses for the same
    key trigger a single load.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[Hashable, tuple[Any, float]] = {}
        self._lock = asyncio.Lock()
        self._key_locks: dict[Hashable, asyncio.Lock] = {}

    def _fresh(self, key: Hashable) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        value, expires_at = entry
        if expires_at <= self.clock():
            self._entries.pop(key, None)
            return _MISSING
        return value

    async def lookup(self, key: Hashable) -> tuple[bool, Any]:
        """(hit, value). A cached None is a hit."""
        async with self._lock:
            value = self._fresh(key)
        return (False, None) if value is _MISSING else (True, value)

    async def get(self, key: Hashable, default: Any = None) -> Any:
        hit, value = await self.lookup(key)
        return value if hit else default

    async def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        async with self._lock:
            self._entries[key] = (value, self.clock() + (self.ttl if ttl is None else ttl))

    async def set_many(self, values: dict[Hashable, Any]) -> None:
        async with self._lock:
            expires_at = self.clock() + self.ttl
            for key, value in values.items():
                self._entries[key] = (value, expires_at)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        cache_none: bool = True,
    ) -> Any:
        """Cached value for `key`, running `loader` on a miss.

        Loader exceptions propagate and nothing is cached. With `cache_none`
        off, a None result is returned but not stored.
        """
        hit, value = await self.lookup(key)
        if hit:
            return value
        async with self._lock:
            key_lock = self._key_locks.setdefault(key, asyncio.Lock())
        try:
            async with key_lock:
                hit, value = await self.lookup(key)
                if hit:
                    return value
                value = await loader()
                if value is not None or cache_none:
                    await self.set(key, value)
                return value
        finally:
            async with self._lock:
                if self._key_locks.get(key) is key_lock and not key_lock.locked():
                    self._key_locks.pop(key, None)
