"""
Login throttling and realtime session bookkeeping on a shared key-value store
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from attr import dataclass

from perfscope.domain.repositories.kv_store import IKeyValueStore

logger = logging.getLogger(__name__)

ATTEMPTS_PREFIX = 'login:attempts:'
LOCK_PREFIX = 'login:lock:'
REALTIME_PREFIX = 'realtime:session:'


@dataclass(slots=True, frozen=True)
class ThrottleStatus:
    allowed: bool
    attempts: int
    remaining_attempts: int
    locked: bool


class LoginThrottle:
    """Locks an identifier for `window_seconds` after `max_attempts` failures within the window."""

    def __init__(self, store: IKeyValueStore, max_attempts: int = 5, window_seconds: int = 15 * 60):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    async def _attempts(self, identifier: str) -> int:
        cached = await self.store.get_value(ATTEMPTS_PREFIX + identifier)
        return int(cached.value) if cached else 0

    async def status(self, identifier: str) -> ThrottleStatus:
        locked = await self.store.get_value(LOCK_PREFIX + identifier) is not None
        attempts = await self._attempts(identifier)
        return ThrottleStatus(
            allowed=not locked,
            attempts=attempts,
            remaining_attempts=0 if locked else max(0, self.max_attempts - attempts),
            locked=locked,
        )

    async def record_failure(self, identifier: str) -> ThrottleStatus:
        if await self.store.get_value(LOCK_PREFIX + identifier) is not None:
            return await self.status(identifier)
        attempts = await self.store.incr(ATTEMPTS_PREFIX + identifier, ex=self.window_seconds)
        if attempts >= self.max_attempts:
            await self.store.set_value(LOCK_PREFIX + identifier, attempts, ex=self.window_seconds)
            await self.store.delete(ATTEMPTS_PREFIX + identifier)
            logger.warning(f"Login locked for {identifier} after {attempts} failed attempts")
            return ThrottleStatus(allowed=False, attempts=attempts, remaining_attempts=0, locked=True)
        return ThrottleStatus(
            allowed=True, attempts=attempts, remaining_attempts=self.max_attempts - attempts, locked=False
        )

    async def record_success(self, identifier: str):
        await self.store.delete(ATTEMPTS_PREFIX + identifier)


class RealtimeSessionRegistry:
    """Realtime subscribers that expire unless they send a heartbeat within `ttl_seconds`."""

    def __init__(self, store: IKeyValueStore, ttl_seconds: int = 5 * 60):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def register(self, session_id: str, payload: Optional[dict[str, Any]] = None, now: Optional[datetime] = None):
        now = now or datetime.now(timezone.utc)
        entry = dict(payload or {})
        entry['last_seen'] = now.isoformat()
        await self.store.set_value(REALTIME_PREFIX + session_id, entry, ex=self.ttl_seconds)

    async def heartbeat(self, session_id: str, now: Optional[datetime] = None) -> bool:
        """Refresh the entry's ttl. False when the session already expired."""
        cached = await self.store.get_value(REALTIME_PREFIX + session_id)
        if cached is None:
            return False
        await self.register(session_id, cached.value, now)
        return True

    async def get(self, session_id: str) -> Optional[dict[str, Any]]:
        cached = await self.store.get_value(REALTIME_PREFIX + session_id)
        return cached.value if cached else None

    async def unregister(self, session_id: str):
        await self.store.delete(REALTIME_PREFIX + session_id)
