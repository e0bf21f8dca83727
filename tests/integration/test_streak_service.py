"""Streak updates through the gamification facade."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from coinbook.errors import InvalidInput
from coinbook.repositories.unit_of_work import unit_of_work
from tests.conftest import create_definitions

DAY_ONE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def day(n: int, hour: int = 12) -> datetime:
    return DAY_ONE.replace(hour=hour) + timedelta(days=n - 1)


async def activity_count(services, user_id, activity_type):
    async with unit_of_work(services.session_factory) as repos:
        return await repos.activity.count(user_id, activity_type)


class TestDailyUpdates:
    @pytest.mark.asyncio
    async def test_first_activity_starts_a_streak(self, services, seeded):
        fan = seeded["fan"].id

        outcome = await services.gamification.process_activity(fan, at=day(1))

        assert outcome.streak.current_streak == 1
        assert outcome.streak.longest_streak == 1
        assert outcome.streak.broken is False
        assert await activity_count(services, fan, "streak_started") == 1

    @pytest.mark.asyncio
    async def test_consecutive_days_extend(self, services, seeded):
        fan = seeded["fan"].id

        await services.gamification.process_activity(fan, at=day(1))
        outcome = await services.gamification.process_activity(fan, at=day(2, hour=1))

        assert outcome.streak.current_streak == 2
        assert outcome.streak.continued is True

    @pytest.mark.asyncio
    async def test_same_day_is_unchanged(self, services, seeded):
        fan = seeded["fan"].id

        await services.gamification.process_activity(fan, at=day(1, hour=8))
        outcome = await services.gamification.process_activity(fan, at=day(1, hour=22))

        assert outcome.streak.current_streak == 1
        assert outcome.streak.changed is False
        assert (outcome.streak.continued, outcome.streak.broken) == (False, False)

    @pytest.mark.asyncio
    async def test_backdated_activity_is_a_no_op(self, services, seeded):
        fan = seeded["fan"].id

        for n in (1, 2):
            await services.gamification.process_activity(fan, at=day(n))
        outcome = await services.gamification.process_activity(fan, at=day(1))

        assert outcome.streak.current_streak == 2
        assert (outcome.streak.changed, outcome.streak.continued, outcome.streak.broken) == (False, False, False)
        assert outcome.streak.to_dict()["continued"] is False

    @pytest.mark.asyncio
    async def test_gap_resets_and_keeps_longest(self, services, seeded):
        fan = seeded["fan"].id

        for n in (1, 2):
            await services.gamification.process_activity(fan, at=day(n))
        outcome = await services.gamification.process_activity(fan, at=day(4))

        assert outcome.streak.current_streak == 1
        assert outcome.streak.longest_streak == 2
        assert outcome.streak.broken is True
        assert outcome.streak.previous_streak == 2
        # short streaks end quietly
        assert await activity_count(services, fan, "streak_broken") == 0

    @pytest.mark.asyncio
    async def test_long_streak_break_is_logged(self, services, seeded):
        fan = seeded["fan"].id

        for n in (1, 2, 3):
            await services.gamification.process_activity(fan, at=day(n))
        await services.gamification.process_activity(fan, at=day(10))

        assert await activity_count(services, fan, "streak_broken") == 1

    @pytest.mark.asyncio
    async def test_weekly_milestone(self, services, seeded):
        fan = seeded["fan"].id

        outcomes = [await services.gamification.process_activity(fan, at=day(n)) for n in range(1, 8)]

        assert [o.streak.milestone for o in outcomes] == [False] * 6 + [True]
        assert await activity_count(services, fan, "streak_milestone") == 1

    @pytest.mark.asyncio
    async def test_streak_types_are_independent(self, services, seeded):
        fan = seeded["fan"].id

        await services.gamification.process_activity(fan, "daily_rank", at=day(1))
        await services.gamification.process_activity(fan, "login", at=day(1))
        await services.gamification.process_activity(fan, "login", at=day(2))

        streaks = {s["streak_type"]: s for s in await services.gamification.streaks(fan)}
        assert streaks["daily_rank"]["current_streak"] == 1
        assert streaks["login"]["current_streak"] == 2
        assert streaks["login"]["last_activity_date"] == "2026-03-02"

    @pytest.mark.asyncio
    async def test_unknown_type(self, services, seeded):
        with pytest.raises(InvalidInput) as exc_info:
            await services.gamification.process_activity(seeded["fan"].id, "weekly")
        assert exc_info.value.details == {"valid_types": ["daily_rank", "login"]}

    @pytest.mark.asyncio
    async def test_no_rows_reads_as_zero(self, services, seeded):
        streaks = await services.gamification.streaks(seeded["rival"].id)
        assert [(s["streak_type"], s["current_streak"], s["last_activity_date"]) for s in streaks] == [
            ("daily_rank", 0, None),
            ("login", 0, None),
        ]


class TestStreakAchievements:
    @pytest.mark.asyncio
    async def test_award_sees_the_updated_streak(self, services, seeded):
        await create_definitions(
            services,
            {
                "code": "streak_3",
                "name": "Three in a Row",
                "collection_type": "engagement",
                "requirement": {"type": "streak_days", "value": 3},
                "points": 15,
            },
        )
        fan = seeded["fan"].id

        await services.gamification.process_activity(fan, at=day(1))
        await services.gamification.process_activity(fan, at=day(2))
        outcome = await services.gamification.process_activity(fan, at=day(3))

        assert [a.code for a in outcome.awards] == ["streak_3"]
