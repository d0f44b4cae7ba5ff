"""
Process-local key-value store with expiry. Suitable for a single process and tests;
multi-process deployments use RedisCache.
"""

import time
from datetime import timedelta
from typing import Any, Callable

from perfscope.domain.entities.cached_value import CachedValue
from perfscope.domain.repositories.kv_store import IKeyValueStore


def _seconds(ex: int | timedelta | None) -> float | None:
    if ex is None:
        return None
    if isinstance(ex, timedelta):
        return ex.total_seconds()
    return float(ex)


class InMemoryKeyValueStore(IKeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def _alive(self, key: str) -> tuple[Any, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _sweep(self):
        """Drop every expired entry"""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._data[key]

    async def get_value(self, key: str) -> CachedValue | None:
        entry = self._alive(key)
        return CachedValue(key=key, value=entry[0]) if entry else None

    async def set_value(self, key: str, value: Any, ex: int | timedelta | None = None):
        self._sweep()
        seconds = _seconds(ex)
        self._data[key] = (value, self._clock() + seconds if seconds is not None else None)

    async def delete(self, key: str):
        self._data.pop(key, None)

    async def incr(self, key: str, ex: int | timedelta | None = None) -> int:
        self._sweep()
        entry = self._alive(key)
        if entry is None:
            await self.set_value(key, 1, ex)
            return 1
        value, expires_at = entry
        self._data[key] = (int(value) + 1, expires_at)
        return int(value) + 1
