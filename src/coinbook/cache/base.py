"""Named cache with TTL, glob invalidation and single-flight refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from coinbook.cache.store import CacheEntry, CacheStore
from coinbook.errors import DependencyUnavailable
from coinbook.telemetry import Telemetry

logger = logging.getLogger(__name__)

SINGLETON = "singleton"

Loader = Callable[[], Awaitable[Any]]

_DEFAULT_TTL: Any = object()


class NamedCache:
    """One cache namespace over a shared store.

    Keys are stored as ``{name}:{key}``. ``ttl=None`` means the entry never
    expires and only an explicit ``invalidate`` removes it.

    Refreshes are single-flight per key: concurrent ``get_or_load`` callers
    share one loader task and wait at most ``refresh_wait`` seconds for it.
    Every ``invalidate`` bumps a generation counter, locally and in the store,
    so a load that started before the invalidation is neither joined by later
    callers nor written back, even when another process invalidated.
    """

    def __init__(
        self,
        name: str,
        store: CacheStore,
        *,
        ttl: float | None,
        refresh_wait: float = 30.0,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.store = store
        self.ttl = ttl
        self.refresh_wait = refresh_wait
        self.telemetry = telemetry
        self.clock = clock
        self.hits = 0
        self.misses = 0
        self._generation = 0
        self._inflight: dict[str, tuple[int, asyncio.Task[Any]]] = {}
        self._failures: dict[str, BaseException] = {}

    def _key(self, key: str) -> str:
        return f"{self.name}:{key}"

    async def get(self, key: str = SINGLETON) -> Any | None:  # noqa: ANN401
        """Return the cached value, or None when absent or past its TTL."""
        entry = await self.store.get(self._key(key))
        if entry is None or entry.is_expired(self.clock()):
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl: Any = _DEFAULT_TTL) -> None:  # noqa: ANN401
        effective_ttl = self.ttl if ttl is _DEFAULT_TTL else ttl
        await self.store.set(self._key(key), CacheEntry(value=value, created_at=self.clock(), ttl=effective_ttl))

    async def invalidate(self, pattern: str | None = None) -> int:
        """Drop every key in this namespace matching ``pattern`` (glob, default all)."""
        self._generation += 1
        await self.store.bump_generation(self.name)
        keys = await self.store.keys(self._key(pattern or "*"))
        removed = await self.store.delete(*keys) if keys else 0
        logger.debug("Invalidated %d keys in cache %s (pattern=%s)", removed, self.name, pattern or "*")
        return removed

    async def get_or_load(
        self,
        key: str,
        loader: Loader,
        *,
        ttl: Any = _DEFAULT_TTL,  # noqa: ANN401
        stale_while_revalidate: bool = False,
    ) -> Any:  # noqa: ANN401
        """Return a fresh value, loading it once for all concurrent callers.

        With ``stale_while_revalidate`` an expired entry is returned at once
        while a background refresh replaces it. Otherwise callers wait for the
        refresh and fall back to the expired entry if it fails or overruns
        ``refresh_wait``; with no entry to fall back to, the error propagates.
        """
        entry = await self.store.get(self._key(key))
        if entry is not None and not entry.is_expired(self.clock()):
            self.hits += 1
            return entry.value

        self.misses += 1
        task = self._start_refresh(key, loader, ttl)

        if entry is not None and stale_while_revalidate:
            entry.stale = True
            failure = self._failures.get(key)
            if failure is not None:
                self._degraded(key, failure)
            return entry.value

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.refresh_wait)
        except asyncio.TimeoutError as exc:
            if entry is not None:
                self._degraded(key, exc)
                return entry.value
            msg = f"{self.name} refresh did not finish within {self.refresh_wait}s"
            raise DependencyUnavailable(msg) from exc
        except Exception as exc:
            if entry is not None:
                self._degraded(key, exc)
                return entry.value
            raise

    def refresh_in_background(self, key: str, loader: Loader, *, ttl: Any = _DEFAULT_TTL) -> asyncio.Task[Any]:  # noqa: ANN401
        """Start (or join) a refresh without waiting for it."""
        return self._start_refresh(key, loader, ttl)

    def _start_refresh(self, key: str, loader: Loader, ttl: Any) -> asyncio.Task[Any]:  # noqa: ANN401
        current = self._inflight.get(key)
        if current is not None:
            generation, task = current
            if generation == self._generation and not task.done():
                return task

        generation = self._generation
        task = asyncio.create_task(self._refresh(key, loader, ttl, generation), name=f"cache-refresh:{self.name}:{key}")
        self._inflight[key] = (generation, task)
        task.add_done_callback(lambda t: self._refresh_done(key, t))
        return task

    async def _refresh(self, key: str, loader: Loader, ttl: Any, generation: int) -> Any:  # noqa: ANN401
        # The store generation catches invalidations issued by other processes.
        shared = await self.store.generation(self.name)
        value = await loader()
        if generation == self._generation and await self.store.generation(self.name) == shared:
            await self.set(key, value, ttl)
        else:
            logger.debug("Discarding %s refresh for %s: invalidated while loading", self.name, key)
        return value

    def _refresh_done(self, key: str, task: asyncio.Task[Any]) -> None:
        current = self._inflight.get(key)
        if current is not None and current[1] is task:
            del self._inflight[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failures[key] = exc
            logger.warning("Refresh of %s:%s failed: %s", self.name, key, exc)
        else:
            self._failures.pop(key, None)

    def _degraded(self, key: str, exc: BaseException) -> None:
        logger.warning("Serving stale %s:%s after failed refresh", self.name, key)
        if self.telemetry is not None:
            self.telemetry.mark_degraded(f"cache:{self.name}", exc)

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "inflight": len(self._inflight),
        }
