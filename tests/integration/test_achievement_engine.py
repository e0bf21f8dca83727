"""Achievement engine against SQLite: awards, tier backfill, no-downgrade and audit."""

from __future__ import annotations

import pytest

from coinbook.gamification.engine import Evaluation
from coinbook.repositories.unit_of_work import unit_of_work
from tests.conftest import create_definitions, rank_products

FIRST_RANK = {
    "code": "first_rank",
    "name": "First Bite",
    "collection_type": "engagement",
    "requirement": {"type": "rank_count", "value": 1},
    "points": 10,
}
RANK_2 = {
    "code": "rank_2",
    "name": "Second Helping",
    "collection_type": "engagement",
    "requirement": {"type": "rank_count", "value": 2},
    "points": 20,
    "prerequisite": "first_rank",
}
BEEF = {
    "code": "beef_collection",
    "name": "Beef Connoisseur",
    "collection_type": "dynamic_collection",
    "requirement": {"type": "animal_collection", "categories": ["Beef"]},
    "has_tiers": True,
    "points": 100,
}
SAMPLER = {
    "code": "sampler",
    "name": "Sampler",
    "collection_type": "static_collection",
    "requirement": {"productIds": ["102", "103", "104", "105"]},
    "has_tiers": True,
    "points": 200,
}


class RecordingSink:
    def __init__(self) -> None:
        self.transitions = []

    async def achievement_transition(self, user_id, transition):
        self.transitions.append(transition)


async def stored(services, user_id, achievement_id):
    async with unit_of_work(services.session_factory) as repos:
        return await repos.user_achievements.get(user_id, achievement_id)


class TestFirstEarn:
    @pytest.mark.asyncio
    async def test_engagement_and_collection(self, services, seeded):
        ids = await create_definitions(services, FIRST_RANK, BEEF, SAMPLER)
        fan = seeded["fan"].id
        await rank_products(services, fan, "101")

        awards = {a.code: a for a in await services.gamification.evaluate_user(fan)}

        assert set(awards) == {"first_rank", "beef_collection"}
        assert awards["first_rank"].new_tier == "complete"
        assert awards["first_rank"].points_awarded == 10
        assert awards["beef_collection"].new_tier == "bronze"
        # 50% of 100 points beats the bronze threshold's 40
        assert awards["beef_collection"].points_awarded == 50
        assert await stored(services, fan, ids["sampler"]) is None

    @pytest.mark.asyncio
    async def test_tier_backfill_notifies_every_step(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        fan = seeded["fan"].id
        await rank_products(services, fan, "102", "103", "104")
        definition = await services.definitions.get(ids["sampler"])
        sink = RecordingSink()

        result = await services.gamification.recalculate_definition(fan, definition, sink=sink)

        assert result.type == "new"
        assert result.new_tier == "gold"
        assert result.points_awarded == 150
        assert [(t.type, t.previous_tier, t.new_tier, t.points_awarded, t.points_gained) for t in sink.transitions] == [
            ("new", None, "bronze", 80, 80),
            ("tier_upgrade", "bronze", "silver", 120, 40),
            ("tier_upgrade", "silver", "gold", 150, 30),
        ]
        row = await stored(services, fan, ids["sampler"])
        assert row.current_tier == "gold"
        assert row.percentage_complete == 75
        assert row.progress["total_ranked"] == 3
        assert row.progress["total_available"] == 4

    @pytest.mark.asyncio
    async def test_nothing_earned_creates_no_row(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        fan = seeded["fan"].id
        await rank_products(services, fan, "101")
        definition = await services.definitions.get(ids["sampler"])

        assert await services.gamification.recalculate_definition(fan, definition) is None
        assert await stored(services, fan, ids["sampler"]) is None


class TestReconcile:
    @pytest.mark.asyncio
    async def test_upgrade_reports_gained_points(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        fan = seeded["fan"].id
        definition = await services.definitions.get(ids["sampler"])

        await rank_products(services, fan, "102", "103")
        first = await services.gamification.recalculate_definition(fan, definition)
        await rank_products(services, fan, "102", "103", "104")
        sink = RecordingSink()
        upgrade = await services.gamification.recalculate_definition(fan, definition, sink=sink)

        assert (first.new_tier, first.points_awarded) == ("bronze", 100)
        assert upgrade.type == "tier_upgrade"
        assert upgrade.previous_tier == "bronze"
        assert upgrade.new_tier == "gold"
        assert upgrade.points_gained == 50
        assert len(sink.transitions) == 1

    @pytest.mark.asyncio
    async def test_never_downgrades(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        fan = seeded["fan"].id
        definition = await services.definitions.get(ids["sampler"])

        await rank_products(services, fan, "102", "103", "104", "105")
        await services.gamification.recalculate_definition(fan, definition)
        await rank_products(services, fan, "102")
        result = await services.gamification.recalculate_definition(fan, definition)

        assert result is None
        row = await stored(services, fan, ids["sampler"])
        assert row.current_tier == "diamond"
        assert row.points_awarded == 200
        event = services.telemetry.recent[-1]
        assert event.message == "achievement_tier_divergence"
        assert event.extra["computed_tier"] is None
        assert event.extra["stored_tier"] == "diamond"

    @pytest.mark.asyncio
    async def test_untiered_row_tracks_progress_then_upgrades(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        fan = seeded["fan"].id
        definition = await services.definitions.get(ids["sampler"])
        async with unit_of_work(services.session_factory) as repos:
            await repos.user_achievements.create(fan, definition.id, tier=None, percentage=0, points=0, progress={})

        async with unit_of_work(services.session_factory) as repos:
            engine = services.gamification.engine(repos)
            silent = await engine.award(fan, definition, Evaluation(definition.id, 25, None, {"ranked": 1}))
        row = await stored(services, fan, ids["sampler"])
        assert silent is None
        assert (row.current_tier, row.percentage_complete) == (None, 25)

        async with unit_of_work(services.session_factory) as repos:
            engine = services.gamification.engine(repos)
            upgrade = await engine.award(fan, definition, Evaluation(definition.id, 50, "bronze", {"ranked": 2}))
        assert upgrade.type == "tier_upgrade"
        assert (upgrade.previous_tier, upgrade.new_tier) == (None, "bronze")
        assert (await stored(services, fan, ids["sampler"])).current_tier == "bronze"

    @pytest.mark.asyncio
    async def test_repeat_evaluation_is_silent(self, services, seeded):
        await create_definitions(services, FIRST_RANK)
        fan = seeded["fan"].id
        await rank_products(services, fan, "101")

        assert len(await services.gamification.evaluate_user(fan)) == 1
        assert await services.gamification.evaluate_user(fan) == []


class TestPrerequisites:
    @pytest.mark.asyncio
    async def test_chain_completes_in_one_pass(self, services, seeded):
        await create_definitions(services, FIRST_RANK, RANK_2)
        fan = seeded["fan"].id
        await rank_products(services, fan, "101", "102")

        awards = await services.gamification.evaluate_user(fan)

        assert [a.code for a in awards] == ["first_rank", "rank_2"]

    @pytest.mark.asyncio
    async def test_unmet_prerequisite_skips_award(self, services, seeded):
        ids = await create_definitions(services, FIRST_RANK, RANK_2)
        fan = seeded["fan"].id
        await rank_products(services, fan, "101", "102")
        definition = await services.definitions.get(ids["rank_2"])

        assert await services.gamification.recalculate_definition(fan, definition) is None
        assert await stored(services, fan, ids["rank_2"]) is None

    @pytest.mark.asyncio
    async def test_locked_flag(self, services, seeded):
        await create_definitions(services, FIRST_RANK, RANK_2)

        items = {i["code"]: i for i in await services.gamification.achievements(seeded["rival"].id)}

        assert items["first_rank"]["locked"] is False
        assert items["rank_2"]["locked"] is True


class TestHiddenAndEngagement:
    @pytest.mark.asyncio
    async def test_hidden_until_earned(self, services, seeded):
        await create_definitions(
            services,
            {
                "code": "early_adopter",
                "name": "Early Adopter",
                "collection_type": "hidden",
                "requirement": {"type": "join_before", "value": "2000-01-01"},
                "is_hidden": True,
                "points": 50,
            },
            {
                "code": "founder",
                "name": "Founder",
                "collection_type": "hidden",
                "requirement": {"type": "join_before", "value": "2100-01-01"},
                "is_hidden": True,
                "points": 50,
            },
        )
        fan = seeded["fan"].id

        assert await services.gamification.achievements(fan) == []
        awards = await services.gamification.evaluate_user(fan)
        items = await services.gamification.achievements(fan)

        assert [a.code for a in awards] == ["founder"]
        assert [i["code"] for i in items] == ["founder"]
        assert items[0]["earned"] is True

    @pytest.mark.asyncio
    async def test_search_count(self, services, seeded):
        await create_definitions(
            services,
            {
                "code": "searcher",
                "name": "Curious Chewer",
                "collection_type": "engagement",
                "requirement": {"type": "search_count", "value": 2},
                "points": 10,
            },
        )
        fan = seeded["fan"].id

        await services.gamification.record_search(fan, "teriyaki", 1)
        assert await services.gamification.evaluate_user(fan) == []
        await services.gamification.record_search(fan, "ghost", 1)
        assert [a.code for a in await services.gamification.evaluate_user(fan)] == ["searcher"]

    @pytest.mark.asyncio
    async def test_broken_definition_does_not_block_others(self, services, seeded):
        await create_definitions(
            services,
            {
                "code": "broken",
                "name": "Broken",
                "collection_type": "static_collection",
                "requirement": {"type": "mystery"},
                "points": 10,
            },
            FIRST_RANK,
        )
        fan = seeded["fan"].id
        await rank_products(services, fan, "101")

        awards = await services.gamification.evaluate_user(fan)

        assert [a.code for a in awards] == ["first_rank"]
        assert services.telemetry.stats()["exception"] == 1


class TestAudit:
    @pytest.mark.asyncio
    async def test_divergence_is_logged_not_applied(self, services, seeded):
        ids = await create_definitions(services, FIRST_RANK, SAMPLER)
        fan = seeded["fan"].id
        await rank_products(services, fan, "102", "103", "104", "105")
        await services.gamification.evaluate_user(fan)
        await rank_products(services, fan, "102")

        divergences = await services.gamification.audit_user(fan, reason="order_cancelled")

        assert len(divergences) == 1
        assert divergences[0]["code"] == "sampler"
        assert divergences[0]["reason"] == "order_cancelled"
        assert (await stored(services, fan, ids["sampler"])).current_tier == "diamond"
        async with unit_of_work(services.session_factory) as repos:
            assert await repos.activity.count(fan, "coin_divergence") == 1

    @pytest.mark.asyncio
    async def test_coin_type_narrows_the_sweep(self, services, seeded):
        await create_definitions(services, SAMPLER)
        fan = seeded["fan"].id
        await rank_products(services, fan, "102", "103", "104", "105")
        await services.gamification.evaluate_user(fan)
        await rank_products(services, fan, "102")

        assert await services.gamification.audit_user(fan, coin_type="engagement") == []
        assert len(await services.gamification.audit_user(fan, coin_type="static_collection")) == 1
