"""Webhook intake: signature check, topic validation and queueing."""

from __future__ import annotations

import asyncio
import json
import time

import pytest

from coinbook.repositories.catalog import metadata_to_dict
from coinbook.repositories.unit_of_work import unit_of_work
from coinbook.webhooks.router import compute_signature, verify_signature

PRODUCT = {"id": 106, "title": "Sweet Chili Buffalo Jerky", "vendor": "Smokehouse", "tags": "rankable"}


def signed(body: bytes, secret: str, topic: str) -> dict[str, str]:
    return {
        "X-Shopify-Hmac-Sha256": compute_signature(body, secret),
        "X-Shopify-Topic": topic,
        "Content-Type": "application/json",
    }


class TestSignature:
    def test_round_trip(self):
        body = b'{"id": 1}'
        assert verify_signature(body, "hush", compute_signature(body, "hush"))

    def test_rejects_tampering_and_missing_header(self):
        signature = compute_signature(b'{"id": 1}', "hush")
        assert not verify_signature(b'{"id": 2}', "hush", signature)
        assert not verify_signature(b'{"id": 1}', "hush", None)


class TestIntake:
    @pytest.mark.asyncio
    async def test_queued_and_acknowledged(self, client, services):
        response = await client.post(
            "/api/webhooks/products",
            json=PRODUCT,
            headers={"X-Shopify-Topic": "products/create"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        job = await services.webhook_queue.get(response.json()["job_id"])
        assert job.type == "products"
        assert job.topic == "products/create"
        assert job.payload["id"] == 106

    @pytest.mark.asyncio
    async def test_topic_defaults_per_type(self, client, services):
        response = await client.post("/api/webhooks/orders", json={"id": 1})

        job = await services.webhook_queue.get(response.json()["job_id"])
        assert job.topic == "orders/updated"

    @pytest.mark.asyncio
    async def test_unknown_type(self, client):
        response = await client.post("/api/webhooks/refunds", json={"id": 1})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_topic_must_match_type(self, client):
        response = await client.post(
            "/api/webhooks/products",
            json=PRODUCT,
            headers={"X-Shopify-Topic": "orders/create"},
        )
        assert response.status_code == 400
        assert "products/update" in response.json()["valid_topics"]

    @pytest.mark.asyncio
    async def test_body_must_be_an_object(self, client):
        response = await client.post(
            "/api/webhooks/customers",
            content=b"[1, 2]",
            headers={"X-Shopify-Topic": "customers/create"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        response = await client.post(
            "/api/webhooks/customers",
            content=b"{not json",
            headers={"X-Shopify-Topic": "customers/create"},
        )
        assert response.status_code == 400


class TestSignedIntake:
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client, services):
        services.settings.shopify_webhook_secret = "hush"
        body = json.dumps(PRODUCT).encode()
        headers = signed(body, "wrong", "products/create")

        response = await client.post("/api/webhooks/products", content=body, headers=headers)

        assert response.status_code == 401
        assert (await services.webhook_queue.counts())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_good_signature_then_processed(self, client, services):
        services.settings.shopify_webhook_secret = "hush"
        body = json.dumps(PRODUCT).encode()

        response = await client.post(
            "/api/webhooks/products",
            content=body,
            headers=signed(body, "hush", "products/create"),
        )
        assert response.status_code == 200
        assert await services.webhook_consumer.drain() == 1

        async with unit_of_work(services.session_factory) as repos:
            row = await repos.metadata.get("106")
        assert row.animal_display == "Buffalo"


def product_update(product_id: int) -> dict:
    return {**PRODUCT, "id": product_id, "title": f"Batch {product_id} Buffalo Jerky"}


async def deliver(client, body: dict, topic: str = "products/update"):
    return await client.post("/api/webhooks/products", json=body, headers={"X-Shopify-Topic": topic})


class TestDeliveryVolume:
    @pytest.mark.asyncio
    async def test_acknowledged_within_budget(self, client, services):
        await deliver(client, product_update(999))

        for product_id in range(1000, 1020):
            started = time.perf_counter()
            response = await deliver(client, product_update(product_id))
            elapsed = time.perf_counter() - started

            assert response.status_code == 200
            assert elapsed < 0.1
        assert (await services.webhook_queue.counts())["waiting"] == 21

    @pytest.mark.asyncio
    async def test_concurrent_burst_is_fully_applied(self, client, services):
        product_ids = list(range(2000, 2100))

        responses = await asyncio.gather(*(deliver(client, product_update(pid)) for pid in product_ids))

        assert [r.status_code for r in responses] == [200] * 100
        assert len({r.json()["job_id"] for r in responses}) == 100
        assert await services.webhook_consumer.drain() == 100

        async with unit_of_work(services.session_factory) as repos:
            rows = {row.shopify_product_id: row for row in await repos.metadata.all()}
        assert {str(pid) for pid in product_ids} <= set(rows)
        assert rows["2042"].animal_display == "Buffalo"
        assert services.webhook_consumer.failed == 0

    @pytest.mark.asyncio
    async def test_repeated_delivery_matches_single_delivery(self, client, services):
        body = product_update(3000)

        await deliver(client, body)
        await services.webhook_consumer.drain()
        async with unit_of_work(services.session_factory) as repos:
            once = metadata_to_dict(await repos.metadata.get("3000"))
            stamped = (await repos.metadata.get("3000")).updated_at

        for _ in range(3):
            await deliver(client, body)
        assert await services.webhook_consumer.drain() == 3

        async with unit_of_work(services.session_factory) as repos:
            row = await repos.metadata.get("3000")
            assert metadata_to_dict(row) == once
            assert row.updated_at == stamped
            assert len([r for r in await repos.metadata.all() if r.shopify_product_id == "3000"]) == 1
