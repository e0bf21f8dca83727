"""Typed collection of the named caches and the invalidation rules that bind them.

Every state-mutating path calls one of the ``on_*`` hooks instead of touching
individual caches, so each trigger invalidates the same set everywhere.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from coinbook.cache.base import SINGLETON, NamedCache
from coinbook.cache.store import CacheStore
from coinbook.config import Settings
from coinbook.telemetry import Telemetry

logger = logging.getLogger(__name__)

PERIODS = ("all_time", "week", "month")
PERIOD_WINDOWS: dict[str, timedelta] = {
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


def leaderboard_top_key(period: str, limit: int) -> str:
    return f"period:{period}:top:{limit}"


def leaderboard_user_key(user_id: int, period: str) -> str:
    return f"user:{user_id}:{period}"


def position_key(user_id: int, period: str) -> str:
    return f"{user_id}:{period}"


def home_stats_key(user_id: int | None = None) -> str:
    return SINGLETON if user_id is None else f"user:{user_id}"


def periods_touched(activity_times: Iterable[datetime], now: datetime | None = None) -> set[str]:
    """Windows affected by activity at the given times; all_time always is."""
    now = now or datetime.now(timezone.utc)
    touched = {"all_time"}
    for ts in activity_times:
        for period, window in PERIOD_WINDOWS.items():
            if ts >= now - window:
                touched.add(period)
    return touched


@dataclass
class CacheRegistry:
    achievements: NamedCache
    leaderboard: NamedCache
    leaderboard_position: NamedCache
    ranking_stats: NamedCache
    metadata: NamedCache
    home_stats: NamedCache
    catalog: NamedCache

    @classmethod
    def create(cls, store: CacheStore, settings: Settings, telemetry: Telemetry | None = None) -> CacheRegistry:
        def named(name: str, ttl: float | None) -> NamedCache:
            return NamedCache(
                name,
                store,
                ttl=ttl,
                refresh_wait=settings.cache_refresh_wait_seconds,
                telemetry=telemetry,
            )

        return cls(
            achievements=named("achievements", settings.achievements_cache_ttl_seconds),
            leaderboard=named("leaderboard", settings.leaderboard_cache_ttl_seconds),
            leaderboard_position=named("leaderboard_position", settings.leaderboard_position_cache_ttl_seconds),
            ranking_stats=named("ranking_stats", None),
            metadata=named("metadata", settings.metadata_cache_ttl_seconds),
            home_stats=named("home_stats", settings.home_stats_cache_ttl_seconds),
            catalog=named("catalog", settings.catalog_cache_ttl_seconds),
        )

    def all(self) -> list[NamedCache]:
        return [
            self.achievements,
            self.leaderboard,
            self.leaderboard_position,
            self.ranking_stats,
            self.metadata,
            self.home_stats,
            self.catalog,
        ]

    # ── Invalidation triggers ──

    async def on_definitions_changed(self) -> None:
        await self.achievements.invalidate()

    async def on_metadata_changed(self) -> None:
        await self.metadata.invalidate()

    async def on_rankings_changed(
        self,
        user_id: int,
        activity_times: Iterable[datetime],
        now: datetime | None = None,
    ) -> None:
        """Ranking write or clear: stats, the user's positions, touched windows, home stats."""
        periods = periods_touched(activity_times, now)
        await self.ranking_stats.invalidate()
        await self.leaderboard_position.invalidate(f"{user_id}:*")
        for period in sorted(periods):
            await self.leaderboard.invalidate(f"period:{period}:*")
            await self.leaderboard.invalidate(leaderboard_user_key(user_id, period))
        await self.home_stats.invalidate(home_stats_key(user_id))
        await self.home_stats.invalidate(home_stats_key())
        logger.debug("Rankings changed for user %s; leaderboard windows %s invalidated", user_id, sorted(periods))

    async def on_achievements_awarded(self, user_id: int) -> None:
        """New awards change engagement scores in every window."""
        await self.leaderboard.invalidate()
        await self.leaderboard_position.invalidate(f"{user_id}:*")
        await self.home_stats.invalidate(home_stats_key(user_id))
        await self.home_stats.invalidate(home_stats_key())

    async def on_product_deleted(self) -> None:
        await self.ranking_stats.invalidate()
        await self.metadata.invalidate()
        await self.catalog.invalidate()

    async def on_recalculation_complete(self) -> None:
        await self.achievements.invalidate()
        await self.home_stats.invalidate()
        await self.leaderboard.invalidate()
        await self.ranking_stats.invalidate()
        await self.leaderboard_position.invalidate()

    def stats(self) -> list[dict[str, object]]:
        return [cache.stats() for cache in self.all()]
