from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any

from perfscope.domain.entities.cached_value import CachedValue


class IKeyValueStore(ABC):
    """Key-value store with per-key expiry, shared between processes when backed by redis."""

    @abstractmethod
    async def get_value(self, key: str) -> CachedValue | None: ...

    @abstractmethod
    async def set_value(self, key: str, value: Any, ex: int | timedelta | None = None): ...

    @abstractmethod
    async def delete(self, key: str): ...

    @abstractmethod
    async def incr(self, key: str, ex: int | timedelta | None = None) -> int:
        """Increment an integer counter. ex is applied when the key is created."""
