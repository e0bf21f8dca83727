"""Leaderboard standings, windows, tie-breaks and cache invalidation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from coinbook.errors import InvalidInput
from coinbook.repositories.unit_of_work import unit_of_work
from tests.conftest import create_definitions

NOW = datetime.now(timezone.utc)


def definition(code: str, *, hidden: bool = False) -> dict:
    return {
        "code": code,
        "name": code.title(),
        "icon": f"icon-{code}",
        "collection_type": "engagement",
        "requirement": {"type": "rank_count", "value": 1},
        "points": 10,
        "is_hidden": hidden,
    }


@pytest_asyncio.fixture
async def badges(services):
    return await create_definitions(services, definition("alpha"), definition("beta"), definition("secret", hidden=True))


async def grant(services, user_id, achievement_id, points, earned_at=None):
    async with unit_of_work(services.session_factory) as repos:
        await repos.user_achievements.create(
            user_id,
            achievement_id,
            tier="complete",
            percentage=100,
            points=points,
            progress={},
            earned_at=earned_at or NOW,
        )


async def set_streak(services, user_id, days):
    async with unit_of_work(services.session_factory) as repos:
        streak = await repos.streaks.get_or_create(user_id, "daily_rank")
        streak.current_streak = days
        streak.longest_streak = days
        await repos.streaks.save(streak)


class TestStandings:
    @pytest.mark.asyncio
    async def test_orders_by_score(self, services, seeded, badges):
        fan, rival = seeded["fan"].id, seeded["rival"].id
        await grant(services, fan, badges["alpha"], 150)
        await grant(services, rival, badges["alpha"], 10)

        standings = await services.leaderboard.standings()

        assert [(e["rank"], e["user_id"], e["score"]) for e in standings] == [(1, fan, 150), (2, rival, 10)]

    @pytest.mark.asyncio
    async def test_tie_goes_to_earliest_first_award(self, services, seeded, badges):
        fan, rival = seeded["fan"].id, seeded["rival"].id
        await grant(services, fan, badges["alpha"], 50, NOW - timedelta(hours=1))
        await grant(services, rival, badges["alpha"], 50, NOW - timedelta(hours=2))

        standings = await services.leaderboard.standings()

        assert [e["user_id"] for e in standings] == [rival, fan]

    @pytest.mark.asyncio
    async def test_streak_bonus_counts(self, services, seeded, badges):
        fan, rival = seeded["fan"].id, seeded["rival"].id
        await grant(services, fan, badges["alpha"], 12)
        await grant(services, rival, badges["alpha"], 10)
        await set_streak(services, rival, 7)

        standings = await services.leaderboard.standings()

        assert standings[0]["user_id"] == rival
        assert standings[0]["score"] == 15
        assert standings[0]["achievement_points"] == 10

    @pytest.mark.asyncio
    async def test_streak_alone_does_not_rank(self, services, seeded, badges):
        await set_streak(services, seeded["fan"].id, 30)
        assert await services.leaderboard.standings() == []

    @pytest.mark.asyncio
    async def test_windows(self, services, seeded, badges):
        fan, rival = seeded["fan"].id, seeded["rival"].id
        await grant(services, rival, badges["alpha"], 100, NOW - timedelta(days=40))
        await grant(services, fan, badges["alpha"], 10, NOW - timedelta(days=10))
        await grant(services, fan, badges["beta"], 5, NOW - timedelta(hours=1))

        all_time = await services.leaderboard.standings("all_time")
        month = await services.leaderboard.standings("month")
        week = await services.leaderboard.standings("week")

        assert [e["user_id"] for e in all_time] == [rival, fan]
        assert [(e["user_id"], e["score"]) for e in month] == [(fan, 15)]
        assert [(e["user_id"], e["score"]) for e in week] == [(fan, 5)]

    @pytest.mark.asyncio
    async def test_unknown_period(self, services):
        with pytest.raises(InvalidInput):
            await services.leaderboard.standings("decade")


class TestViews:
    @pytest.mark.asyncio
    async def test_top_has_public_names_and_visible_badges(self, services, seeded, badges):
        fan = seeded["fan"].id
        await grant(services, fan, badges["alpha"], 10, NOW - timedelta(hours=2))
        await grant(services, fan, badges["secret"], 10, NOW - timedelta(hours=1))

        top = await services.leaderboard.top(5)

        assert len(top) == 1
        assert top[0]["display_name"] == "Jamie L."
        assert top[0]["badges"] == [{"code": "alpha", "icon": "icon-alpha", "tier": "complete"}]

    @pytest.mark.asyncio
    async def test_position_and_compare(self, services, seeded, badges):
        fan, rival, staff = seeded["fan"].id, seeded["rival"].id, seeded["staff"].id
        await grant(services, fan, badges["alpha"], 30)
        await grant(services, rival, badges["alpha"], 20)

        position = await services.leaderboard.position(rival)
        comparison = await services.leaderboard.compare(fan, rival)

        assert position["rank"] == 2
        assert position["total_ranked_users"] == 2
        assert await services.leaderboard.position(staff) is None
        assert comparison["score_diff"] == 10
        assert comparison["rank_diff"] == -1
        assert comparison["leader"] == fan

    @pytest.mark.asyncio
    async def test_user_summary_covers_every_window(self, services, seeded, badges):
        fan = seeded["fan"].id
        await grant(services, fan, badges["alpha"], 30, NOW - timedelta(days=20))

        summary = await services.leaderboard.user_summary(fan)

        assert summary["all_time"]["rank"] == 1
        assert summary["month"]["rank"] == 1
        assert summary["week"] is None


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_awards_refresh_cached_views(self, services, seeded, badges):
        fan, rival = seeded["fan"].id, seeded["rival"].id
        await grant(services, fan, badges["alpha"], 30)
        assert [e["user_id"] for e in await services.leaderboard.top(10)] == [fan]

        await grant(services, rival, badges["alpha"], 50)
        assert [e["user_id"] for e in await services.leaderboard.top(10)] == [fan]

        await services.caches.on_achievements_awarded(rival)
        assert [e["user_id"] for e in await services.leaderboard.top(10)] == [rival, fan]
        assert await services.leaderboard.rank_of(rival) == 1
