"""Repository behavior that the services rely on but rarely exercise directly."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from coinbook.repositories.catalog import OrderLine
from coinbook.repositories.unit_of_work import unit_of_work


class TestUsers:
    @pytest.mark.asyncio
    async def test_customer_upsert_links_existing_email(self, services, seeded):
        async with unit_of_work(services.session_factory) as repos:
            user, created = await repos.users.upsert_from_customer("77", "FAN@example.com", first_name="Jay")

        assert created is False
        assert user.id == seeded["fan"].id
        assert user.shopify_customer_id == "77"
        assert user.first_name == "Jay"

    @pytest.mark.asyncio
    async def test_customer_without_email_gets_placeholder(self, services):
        async with unit_of_work(services.session_factory) as repos:
            user, created = await repos.users.upsert_from_customer("88", None)
            again, created_again = await repos.users.upsert_from_customer("88", None)

        assert created is True
        assert created_again is False
        assert again.id == user.id
        assert user.email == "customer-88@placeholder.invalid"


class TestSessions:
    @pytest.mark.asyncio
    async def test_expired_session_is_invalid(self, services, seeded):
        later = datetime.now(timezone.utc) + timedelta(days=31)
        async with unit_of_work(services.session_factory) as repos:
            assert await repos.sessions.get_valid(seeded["fan_session"]) is not None
            assert await repos.sessions.get_valid(seeded["fan_session"], now=later) is None
            assert await repos.sessions.get_valid("") is None


class TestMagicLinks:
    @pytest.mark.asyncio
    async def test_single_use(self, services):
        async with unit_of_work(services.session_factory) as repos:
            link = await repos.magic_links.create("New@Example.com")
        async with unit_of_work(services.session_factory) as repos:
            first = await repos.magic_links.consume(link.token)
        async with unit_of_work(services.session_factory) as repos:
            second = await repos.magic_links.consume(link.token)

        assert first.email == "new@example.com"
        assert second is None

    @pytest.mark.asyncio
    async def test_expired_or_unknown(self, services):
        async with unit_of_work(services.session_factory) as repos:
            link = await repos.magic_links.create("late@example.com", ttl=timedelta(minutes=1))
            later = datetime.now(timezone.utc) + timedelta(minutes=5)
            assert await repos.magic_links.consume(link.token, now=later) is None
            assert await repos.magic_links.consume("no-such-token") is None


class TestOrders:
    @pytest.mark.asyncio
    async def test_upsert_then_cancel(self, services, seeded):
        fan = seeded["fan"].id
        lines = [OrderLine("101", "TB-1", 2), OrderLine("103")]
        async with unit_of_work(services.session_factory) as repos:
            first = await repos.orders.upsert_items("5001", lines, user_id=fan, fulfillment_status="fulfilled")
            repeat = await repos.orders.upsert_items("5001", lines, user_id=fan, fulfillment_status="fulfilled")
            assert await repos.orders.purchased_product_ids(fan) == {"101", "103"}

            users, newly = await repos.orders.cancel("5001")
            _, again = await repos.orders.cancel("5001")
            assert await repos.orders.purchased_product_ids(fan) == set()

        assert (first.created, first.updated) == (2, 0)
        assert (repeat.created, repeat.updated) == (0, 0)
        assert (users, newly, again) == ([fan], True, False)

    @pytest.mark.asyncio
    async def test_fulfillment_downgrade_is_reported(self, services, seeded):
        fan = seeded["fan"].id
        async with unit_of_work(services.session_factory) as repos:
            await repos.orders.upsert_items("5002", [OrderLine("102")], user_id=fan, fulfillment_status="fulfilled")
            change = await repos.orders.upsert_items("5002", [OrderLine("102")], user_id=fan, fulfillment_status=None)

        assert change.fulfillment_downgraded is True
        assert change.updated == 1
