"""Catalog endpoints: enriched listing, search and rank eligibility."""

from __future__ import annotations

import pytest

from coinbook.repositories.unit_of_work import unit_of_work
from tests.conftest import rank_products, session_headers


class TestAllProducts:
    @pytest.mark.asyncio
    async def test_sorted_and_enriched(self, client, services, seeded):
        await rank_products(services, seeded["fan"].id, "102", "101")

        data = (await client.get("/api/products/all")).json()

        assert data["total"] == 5
        assert data["has_more"] is False
        assert [p["title"] for p in data["items"]][:2] == ["Cracked Pepper Elk Jerky", "Ghost Pepper Turkey Jerky"]
        by_id = {p["id"]: p for p in data["items"]}
        assert by_id["102"]["animal_display"] == "Beef"
        assert by_id["102"]["ranking_count"] == 1
        assert by_id["101"]["avg_rank"] == 2.0
        assert by_id["105"]["ranking_count"] == 0

    @pytest.mark.asyncio
    async def test_pagination(self, client, seeded):
        data = (await client.get("/api/products/all?limit=2&page=3")).json()
        assert [p["id"] for p in data["items"]] == ["102"]
        assert data["page"] == 3

    @pytest.mark.asyncio
    async def test_catalog_outage_without_cached_copy(self, client, source):
        source.fail = True

        response = await client.get("/api/products/all")

        assert response.status_code == 503
        assert response.json()["code"] == "dependency_unavailable"


class TestByIds:
    @pytest.mark.asyncio
    async def test_request_order_without_unknown_or_repeated_ids(self, services, seeded):
        await rank_products(services, seeded["fan"].id, "103")

        products = await services.products.get_by_ids(["103", "999", "101", "103"])

        assert [p["id"] for p in products] == ["103", "101"]
        assert products[0]["ranking_count"] == 1
        assert products[1]["animal_display"] == "Beef"


class TestSearch:
    @pytest.mark.asyncio
    async def test_every_word_must_match(self, client, seeded):
        beef = (await client.get("/api/products/search?q=beef")).json()
        turkey = (await client.get("/api/products/search?q=pepper%20turkey")).json()

        assert beef["total"] == 2
        assert [p["id"] for p in turkey["items"]] == ["103"]

    @pytest.mark.asyncio
    async def test_signed_in_searches_are_recorded(self, client, services, seeded):
        await client.get("/api/products/search?q=pork", headers=session_headers(seeded["fan_session"]))
        await client.get("/api/products/search?q=pork")
        await services.tasks.drain(timeout=5)

        stats = await services.gamification.stats(seeded["fan"].id)
        assert stats.total_searches == 1

    @pytest.mark.asyncio
    async def test_sort_by_ranking_count(self, client, services, seeded):
        await rank_products(services, seeded["fan"].id, "104", "105")
        await rank_products(services, seeded["rival"].id, "105")

        data = (await client.get("/api/products/search?sort=totalranks-desc")).json()

        assert [p["id"] for p in data["items"]][:2] == ["105", "104"]


class TestRankable:
    @pytest.mark.asyncio
    async def test_customer_without_purchases(self, client, seeded):
        data = (await client.get("/api/products/rankable", headers=session_headers(seeded["fan_session"]))).json()
        assert data["total"] == 0

    @pytest.mark.asyncio
    async def test_flagged_products_are_open_to_everyone(self, client, services, seeded):
        async with unit_of_work(services.session_factory) as repos:
            await repos.metadata.upsert("104", {"force_rankable": True})

        data = (await client.get("/api/products/rankable", headers=session_headers(seeded["fan_session"]))).json()

        assert [p["id"] for p in data["items"]] == ["104"]

    @pytest.mark.asyncio
    async def test_employees_rank_the_whole_catalog_minus_ranked(self, client, services, seeded):
        await rank_products(services, seeded["staff"].id, "101")

        data = (await client.get("/api/products/rankable", headers=session_headers(seeded["staff_session"]))).json()

        assert data["total"] == 4
        assert "101" not in {p["id"] for p in data["items"]}

    @pytest.mark.asyncio
    async def test_requires_a_session(self, client):
        assert (await client.get("/api/products/rankable")).status_code == 401
