"""
Debounce cache: short-lived flags that suppress repeated work.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol

import redis.asyncio as redis

KEY_PREFIX = "cc:flag:"


class DebounceCache(Protocol):
    async def read_flag(self, key: str) -> bool: ...

    async def write_flag(self, key: str, ttl: timedelta) -> None: ...

    async def clear(self, key: str) -> None: ...


class RedisDebounceCache:
    """Flags stored as Redis keys with an expiry."""

    def __init__(self, client: redis.Redis, prefix: str = KEY_PREFIX):
        self._redis = client
        self._prefix = prefix

    async def read_flag(self, key: str) -> bool:
        return await self._redis.exists(f"{self._prefix}{key}") > 0

    async def write_flag(self, key: str, ttl: timedelta) -> None:
        await self._redis.setex(f"{self._prefix}{key}", int(ttl.total_seconds()), "1")

    async def clear(self, key: str) -> None:
        await self._redis.delete(f"{self._prefix}{key}")
