from __future__ import annotations

import json
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from tokenward.clock import Clock, SystemClock
from tokenward.logging import get_logger

logger = get_logger(__name__)

SWEEP_INTERVAL_SECONDS = 60


class MemoryCache:
    """In-process cache layer used when Redis is not configured.

    No method awaits internally, so each call runs to completion on the event
    loop and increments are atomic for a single process. Expiry follows the
    injected clock.
    """

    def __init__(
        self, clock: Optional[Clock] = None, sweep_interval_seconds: int = SWEEP_INTERVAL_SECONDS
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._next_sweep = self.clock.now() + self._sweep_interval

    def _sweep_expired(self) -> None:
        """Drop expired keys that were never read again; runs at most once per interval."""
        now = self.clock.now()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("memory_cache_swept", removed=len(expired))

    def _live(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.clock.now():
            self._entries.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None or ttl_seconds <= 0:
            return None
        return self.clock.now() + timedelta(seconds=ttl_seconds)

    async def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._sweep_expired()
        self._entries[key] = (value, self._expiry(ttl_seconds))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        self._sweep_expired()
        entry = self._live(key)
        if entry is None:
            self._entries[key] = ("1", self._expiry(ttl_seconds))
            return 1
        value, expires_at = entry
        count = int(value) + 1
        if expires_at is None:
            expires_at = self._expiry(ttl_seconds)
        self._entries[key] = (str(count), expires_at)
        return count

    async def decrement_if_positive(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return 0
        value, expires_at = entry
        current = int(value)
        if current <= 0:
            return current
        self._entries[key] = (str(current - 1), expires_at)
        return current - 1

    async def ttl(self, key: str) -> Optional[int]:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        remaining = (entry[1] - self.clock.now()).total_seconds()
        return max(0, math.ceil(remaining))

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning("cache_payload_invalid", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value), ttl_seconds)

    async def close(self) -> None:
        self._entries.clear()


__all__ = ["MemoryCache"]
