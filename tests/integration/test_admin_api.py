"""Employee-only endpoints and the recalculation sweep."""

from __future__ import annotations

import pytest

from coinbook.cache.base import SINGLETON
from tests.conftest import create_definitions, rank_products, session_headers

SAMPLER = {
    "code": "sampler",
    "name": "Sampler",
    "collection_type": "static_collection",
    "requirement": {"productIds": ["102", "103", "104", "105"]},
    "has_tiers": True,
    "points": 200,
}


@pytest.fixture
def staff(seeded):
    return session_headers(seeded["staff_session"])


class TestAccess:
    @pytest.mark.asyncio
    async def test_customers_are_forbidden(self, client, seeded):
        response = await client.get("/api/admin/queues", headers=session_headers(seeded["fan_session"]))
        assert response.status_code == 403
        assert response.json()["code"] == "not_authorized"

    @pytest.mark.asyncio
    async def test_anonymous_is_unauthenticated(self, client):
        assert (await client.get("/api/admin/queues")).status_code == 401

    @pytest.mark.asyncio
    async def test_queue_counts(self, client, services, staff):
        await services.webhook_queue.enqueue("orders", "orders/create", {"id": 1})

        data = (await client.get("/api/admin/queues", headers=staff)).json()

        assert data["queues"]["webhooks"]["waiting"] == 1
        assert data["queues"]["coin-recalculation"]["waiting"] == 0
        assert data["consumers"]["webhooks"] == {"processed": 0, "failed": 0}
        assert set(data["background_tasks"]) == {"pending", "completed", "failed"}


class TestRecalculation:
    @pytest.mark.asyncio
    async def test_sweep_awards_retroactively(self, client, services, seeded, staff):
        ids = await create_definitions(services, SAMPLER)
        await rank_products(services, seeded["fan"].id, "102", "103", "104")
        await rank_products(services, seeded["rival"].id, "102")

        started = await client.post(f"/api/admin/achievements/{ids['sampler']}/recalculate", headers=staff)
        assert started.status_code == 202
        run_id = started.json()["run_id"]
        await services.tasks.drain(timeout=5)

        run = (await client.get(f"/api/admin/recalculations/{run_id}", headers=staff)).json()
        assert run["status"] == "completed"
        assert run["total"] == 2
        assert run["processed"] == 2
        assert run["new_awards"] == 1
        assert run["errors"] == []
        assert run["finished_at"] is not None

    @pytest.mark.asyncio
    async def test_second_sweep_awards_nothing(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        await rank_products(services, seeded["fan"].id, "102", "103", "104", "105")
        await rank_products(services, seeded["rival"].id, "102", "103")
        definition = await services.definitions.get(ids["sampler"])

        first = await services.recalculator.recalculate(definition)
        second = await services.recalculator.recalculate(definition)

        assert first["new_awards"] == 2
        assert second == {"total": 2, "processed": 2, "new_awards": 0, "tier_upgrades": 0, "errors": []}

    @pytest.mark.asyncio
    async def test_cancel_before_first_batch(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        for user in ("fan", "rival", "staff"):
            await rank_products(services, seeded[user].id, "102")
        definition = await services.definitions.get(ids["sampler"])

        run = services.recalculator.start(definition)
        services.recalculator.cancel(run.run_id)
        await services.tasks.drain(timeout=5)

        assert run.status == "cancelled"
        assert run.processed == 0
        assert run.total == 3

    @pytest.mark.asyncio
    async def test_cancel_finished_run_is_a_no_op(self, client, services, seeded, staff):
        ids = await create_definitions(services, SAMPLER)
        started = await client.post(f"/api/admin/achievements/{ids['sampler']}/recalculate", headers=staff)
        await services.tasks.drain(timeout=5)

        response = await client.post(f"/api/admin/recalculations/{started.json()['run_id']}/cancel", headers=staff)

        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_sweep_refreshes_caches(self, services, seeded):
        ids = await create_definitions(services, SAMPLER)
        await services.caches.home_stats.set(SINGLETON, {"stale": True})

        await services.recalculator.recalculate(await services.definitions.get(ids["sampler"]))

        assert await services.caches.home_stats.get() is None

    @pytest.mark.asyncio
    async def test_unknown_achievement_and_run(self, client, staff):
        assert (await client.post("/api/admin/achievements/999/recalculate", headers=staff)).status_code == 404
        assert (await client.get("/api/admin/recalculations/nope", headers=staff)).status_code == 404


class TestDefinitionEdits:
    @pytest.mark.asyncio
    async def test_update_invalidates_definitions(self, client, services, staff):
        ids = await create_definitions(services, SAMPLER)
        assert (await services.definitions.get(ids["sampler"])).name == "Sampler"

        response = await client.patch(
            f"/api/admin/achievements/{ids['sampler']}",
            json={"name": "Sampler Platter", "points": 300},
            headers=staff,
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Sampler Platter"
        definition = await services.definitions.get(ids["sampler"])
        assert (definition.name, definition.points) == ("Sampler Platter", 300)

    @pytest.mark.asyncio
    async def test_invalid_thresholds(self, client, services, staff):
        ids = await create_definitions(services, SAMPLER)

        response = await client.patch(
            f"/api/admin/achievements/{ids['sampler']}",
            json={"tier_thresholds": {"bronze": 50, "silver": 40, "gold": 75, "platinum": 90, "diamond": 100}},
            headers=staff,
        )

        assert response.status_code == 400
        assert "strictly increasing" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_requirement_must_still_parse(self, client, services, staff):
        ids = await create_definitions(services, SAMPLER)

        response = await client.patch(
            f"/api/admin/achievements/{ids['sampler']}",
            json={"collection_type": "engagement", "requirement": {"type": "bogus"}},
            headers=staff,
        )

        assert response.status_code == 400
        assert (await services.definitions.get(ids["sampler"])).collection_type == "static_collection"

    @pytest.mark.asyncio
    async def test_self_prerequisite(self, client, services, staff):
        ids = await create_definitions(services, SAMPLER)

        response = await client.patch(
            f"/api/admin/achievements/{ids['sampler']}",
            json={"prerequisite_achievement_id": ids["sampler"]},
            headers=staff,
        )

        assert response.status_code == 400


class TestMetadataEdits:
    @pytest.mark.asyncio
    async def test_override_and_repeat(self, client, services, staff):
        await services.products.metadata_map()

        first = await client.patch(
            "/api/admin/products/105/metadata",
            json={"animal_display": "Wild Elk", "force_rankable": True},
            headers=staff,
        )
        again = await client.patch(
            "/api/admin/products/105/metadata",
            json={"animal_display": "Wild Elk", "force_rankable": True},
            headers=staff,
        )

        assert first.json()["changed"] is True
        assert first.json()["animal_display"] == "Wild Elk"
        assert again.json()["changed"] is False
        assert (await services.products.metadata_map())["105"]["animal_display"] == "Wild Elk"
