# src/storage/redis_kv.py
from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

PREFIX = "subtrack"

def key(name: str, prefix: str = PREFIX) -> str:
    # {prefix}:{name}  e.g. subtrack:dismissed_alert_ids:42
    return f"{prefix}:{name}"


class RedisStorage:
    """
    KeyValueStorage backed by plain Redis strings.
    The client is created lazily on first use; close() releases it.
    """
    def __init__(self, url: str, prefix: str = PREFIX):
        self.url = url
        self.prefix = prefix
        self._r: Optional[redis.Redis] = None

    def _client(self) -> redis.Redis:
        if self._r is None:
            self._r = redis.from_url(self.url, decode_responses=True)
        return self._r

    async def get(self, name: str) -> Optional[str]:
        val = await self._client().get(key(name, self.prefix))
        if isinstance(val, (bytes, bytearray)):
            return val.decode("utf-8")
        return val

    async def set(self, name: str, value: str) -> None:
        await self._client().set(key(name, self.prefix), value)

    async def delete(self, name: str) -> None:
        await self._client().delete(key(name, self.prefix))

    async def close(self) -> None:
        if self._r is not None:
            await self._r.aclose()
            self._r = None
