"""Invalidation rules binding the named caches together."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from coinbook.cache.base import SINGLETON
from coinbook.cache.registry import (
    CacheRegistry,
    home_stats_key,
    leaderboard_top_key,
    leaderboard_user_key,
    periods_touched,
    position_key,
)
from coinbook.cache.store import MemoryStore
from coinbook.config import Settings

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def caches():
    return CacheRegistry.create(MemoryStore(), Settings(database_url="sqlite+aiosqlite://"))


class TestPeriodsTouched:
    def test_recent_activity_touches_every_window(self):
        assert periods_touched([NOW - timedelta(hours=1)], NOW) == {"all_time", "week", "month"}

    def test_old_activity_touches_all_time_only(self):
        assert periods_touched([NOW - timedelta(days=45)], NOW) == {"all_time"}

    def test_two_weeks_ago_touches_month(self):
        assert periods_touched([NOW - timedelta(days=14)], NOW) == {"all_time", "month"}

    def test_no_activity(self):
        assert periods_touched([], NOW) == {"all_time"}


class TestRegistry:
    def test_ranking_stats_never_expire(self, caches):
        assert caches.ranking_stats.ttl is None
        assert caches.leaderboard.ttl == 300
        assert len(caches.stats()) == 7

    @pytest.mark.asyncio
    async def test_rankings_changed_scopes_to_touched_windows(self, caches):
        await caches.leaderboard.set(leaderboard_top_key("all_time", 10), "all")
        await caches.leaderboard.set(leaderboard_top_key("week", 10), "week")
        await caches.leaderboard.set(leaderboard_top_key("month", 10), "month")
        await caches.leaderboard_position.set(position_key(7, "week"), 3)
        await caches.leaderboard_position.set(position_key(8, "week"), 4)
        await caches.ranking_stats.set(SINGLETON, {"101": 3})
        await caches.home_stats.set(home_stats_key(7), {})
        await caches.home_stats.set(home_stats_key(8), {})
        await caches.home_stats.set(home_stats_key(), {})

        await caches.on_rankings_changed(7, [NOW - timedelta(days=45)], NOW)

        assert await caches.leaderboard.get(leaderboard_top_key("all_time", 10)) is None
        assert await caches.leaderboard.get(leaderboard_top_key("week", 10)) == "week"
        assert await caches.leaderboard.get(leaderboard_top_key("month", 10)) == "month"
        assert await caches.leaderboard_position.get(position_key(7, "week")) is None
        assert await caches.leaderboard_position.get(position_key(8, "week")) == 4
        assert await caches.ranking_stats.get() is None
        assert await caches.home_stats.get(home_stats_key(7)) is None
        assert await caches.home_stats.get(home_stats_key(8)) == {}
        assert await caches.home_stats.get(home_stats_key()) is None

    @pytest.mark.asyncio
    async def test_rankings_changed_drops_user_summary(self, caches):
        await caches.leaderboard.set(leaderboard_user_key(7, "all_time"), {"rank": 1})
        await caches.on_rankings_changed(7, [], NOW)
        assert await caches.leaderboard.get(leaderboard_user_key(7, "all_time")) is None

    @pytest.mark.asyncio
    async def test_achievements_awarded_clears_all_windows(self, caches):
        await caches.leaderboard.set(leaderboard_top_key("week", 10), "week")
        await caches.on_achievements_awarded(7)
        assert await caches.leaderboard.get(leaderboard_top_key("week", 10)) is None

    @pytest.mark.asyncio
    async def test_product_deleted(self, caches):
        await caches.ranking_stats.set(SINGLETON, {})
        await caches.metadata.set(SINGLETON, {})
        await caches.catalog.set(SINGLETON, [])
        await caches.achievements.set(SINGLETON, [])

        await caches.on_product_deleted()

        assert await caches.ranking_stats.get() is None
        assert await caches.metadata.get() is None
        assert await caches.catalog.get() is None
        assert await caches.achievements.get() == []
