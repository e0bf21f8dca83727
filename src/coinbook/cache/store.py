"""Backing stores for named caches.

``MemoryStore`` keeps entries in a process-local dict; ``RedisStore`` shares
them between processes. Both store the full entry (value, created_at, ttl) so
a cache can still hand back a stale value after the TTL passes.

Each namespace also has a generation counter in the store. Invalidations bump
it, and a load only writes back when the counter has not moved, whichever
process did the invalidating.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from coinbook.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

# Redis keeps expired entries around this long so stale-while-revalidate has something to serve.
STALE_GRACE_SECONDS = 86_400


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    ttl: float | None = None
    stale: bool = False

    def is_expired(self, now: float | None = None) -> bool:
        if self.ttl is None:
            return False
        return (now if now is not None else time.time()) - self.created_at >= self.ttl


class CacheStore(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, entry: CacheEntry) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, pattern: str) -> list[str]: ...

    async def generation(self, namespace: str) -> int: ...

    async def bump_generation(self, namespace: str) -> int: ...


class MemoryStore:
    """Process-local store; glob invalidation enumerates the dict keys."""

    def __init__(self) -> None:
        self._data: dict[str, CacheEntry] = {}
        self._generations: dict[str, int] = {}

    async def generation(self, namespace: str) -> int:
        return self._generations.get(namespace, 0)

    async def bump_generation(self, namespace: str) -> int:
        self._generations[namespace] = self._generations.get(namespace, 0) + 1
        return self._generations[namespace]

    async def get(self, key: str) -> CacheEntry | None:
        return self._data.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._data[key] = entry

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, pattern: str) -> list[str]:
        return [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]


class RedisStore:
    """Shared store on Redis; values must be JSON-serializable."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "cache:") -> None:
        self.redis = redis_client
        self.prefix = prefix

    def _generation_key(self, namespace: str) -> str:
        # Outside the "{namespace}:" prefix so a namespace-wide invalidate never deletes it.
        return f"{self.prefix}gen:{namespace}"

    async def generation(self, namespace: str) -> int:
        try:
            raw = await self.redis.get(self._generation_key(namespace))
        except RedisError as exc:
            msg = f"cache backend unavailable: {exc}"
            raise DependencyUnavailable(msg) from exc
        return int(raw or 0)

    async def bump_generation(self, namespace: str) -> int:
        try:
            return int(await self.redis.incr(self._generation_key(namespace)))
        except RedisError as exc:
            msg = f"cache backend unavailable: {exc}"
            raise DependencyUnavailable(msg) from exc

    async def get(self, key: str) -> CacheEntry | None:
        try:
            raw = await self.redis.get(self.prefix + key)
        except RedisError as exc:
            msg = f"cache backend unavailable: {exc}"
            raise DependencyUnavailable(msg) from exc
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping undecodable cache entry %s", key)
            await self.delete(key)
            return None
        return CacheEntry(value=data["value"], created_at=data["created_at"], ttl=data.get("ttl"))

    async def set(self, key: str, entry: CacheEntry) -> None:
        payload = json.dumps({"value": entry.value, "created_at": entry.created_at, "ttl": entry.ttl})
        expire = int(entry.ttl + STALE_GRACE_SECONDS) if entry.ttl is not None else None
        try:
            await self.redis.set(self.prefix + key, payload, ex=expire)
        except RedisError as exc:
            msg = f"cache backend unavailable: {exc}"
            raise DependencyUnavailable(msg) from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.redis.delete(*(self.prefix + k for k in keys)))
        except RedisError as exc:
            msg = f"cache backend unavailable: {exc}"
            raise DependencyUnavailable(msg) from exc

    async def keys(self, pattern: str) -> list[str]:
        found: list[str] = []
        try:
            async for key in self.redis.scan_iter(match=self.prefix + pattern, count=500):
                found.append(key[len(self.prefix):])
        except RedisError as exc:
            msg = f"cache backend unavailable: {exc}"
            raise DependencyUnavailable(msg) from exc
        return found
