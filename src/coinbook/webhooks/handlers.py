"""Webhook job handlers.

Every handler is idempotent: metadata and users upsert on natural keys, order
items upsert on (order id, product id), and a repeated cancellation changes
nothing the second time.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.registry import CacheRegistry
from coinbook.errors import PermanentJobError
from coinbook.products.catalog import is_rankable, normalize_product
from coinbook.products.extractors import extract_metadata
from coinbook.repositories.catalog import OrderLine
from coinbook.repositories.unit_of_work import unit_of_work
from coinbook.webhooks.queue import RECALC_QUEUE, Job, JobQueue

logger = structlog.get_logger()

PRODUCT_TOPICS = ("products/create", "products/update", "products/delete")
CUSTOMER_TOPICS = ("customers/create", "customers/update")
ORDER_TOPICS = (
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/fulfilled",
    "orders/partially_fulfilled",
    "orders/cancelled",
)
TOPICS_BY_TYPE = {
    "products": PRODUCT_TOPICS,
    "customers": CUSTOMER_TOPICS,
    "orders": ORDER_TOPICS,
}


def _parse_datetime(value: Any) -> datetime | None:  # noqa: ANN401
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _require(payload: dict[str, Any], key: str) -> Any:  # noqa: ANN401
    value = payload.get(key)
    if value in (None, ""):
        msg = f"Webhook payload missing {key!r}"
        raise PermanentJobError(msg)
    return value


class WebhookProcessor:
    """Dispatches webhook jobs by ``{type}/{action}`` topic."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: CacheRegistry,
        recalc_queue: JobQueue,
    ) -> None:
        self.session_factory = session_factory
        self.caches = caches
        self.recalc_queue = recalc_queue

    async def __call__(self, job: Job) -> dict[str, Any]:
        if job.type == "products":
            return await self.handle_product(job.topic, job.payload)
        if job.type == "customers":
            return await self.handle_customer(job.payload)
        if job.type == "orders":
            return await self.handle_order(job.topic, job.payload)
        msg = f"Unknown webhook type: {job.type}"
        raise PermanentJobError(msg)

    async def handle_product(self, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        product_id = str(_require(payload, "id"))

        if topic == "products/delete":
            async with unit_of_work(self.session_factory) as repos:
                deleted = await repos.metadata.delete(product_id)
            await self.caches.on_product_deleted()
            logger.info("product_deleted", product_id=product_id, existed=deleted)
            return {"product_id": product_id, "deleted": deleted}

        # Untagged products are not part of the rankable catalog.
        if not is_rankable(payload):
            await self.caches.catalog.invalidate()
            return {"product_id": product_id, "skipped": "not_rankable"}

        product = normalize_product(payload)
        async with unit_of_work(self.session_factory) as repos:
            _, changed = await repos.metadata.upsert(product_id, extract_metadata(product))
        if changed:
            await self.caches.on_metadata_changed()
            await self.caches.catalog.invalidate()
        logger.info("product_upserted", product_id=product_id, topic=topic, changed=changed)
        return {"product_id": product_id, "changed": changed}

    async def handle_customer(self, payload: dict[str, Any]) -> dict[str, Any]:
        customer_id = str(_require(payload, "id"))
        async with unit_of_work(self.session_factory) as repos:
            user, created = await repos.users.upsert_from_customer(
                customer_id,
                payload.get("email"),
                payload.get("first_name"),
                payload.get("last_name"),
            )
            user_id = user.id
        logger.info("customer_upserted", customer_id=customer_id, user_id=user_id, created=created)
        return {"user_id": user_id, "created": created}

    async def handle_order(self, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        order_id = str(_require(payload, "id"))
        customer = payload.get("customer") or {}
        email = payload.get("email") or customer.get("email")
        cancelled_at = _parse_datetime(payload.get("cancelled_at"))
        if topic == "orders/cancelled" and cancelled_at is None:
            cancelled_at = _parse_datetime(payload.get("updated_at")) or datetime.now(timezone.utc)

        lines = [
            OrderLine(product_id=str(item["product_id"]), sku=item.get("sku"), quantity=int(item.get("quantity") or 1))
            for item in payload.get("line_items") or []
            if item.get("product_id")
        ]

        async with unit_of_work(self.session_factory) as repos:
            user_id = None
            if customer.get("id"):
                user, _ = await repos.users.upsert_from_customer(
                    str(customer["id"]), email, customer.get("first_name"), customer.get("last_name")
                )
                user_id = user.id
            elif email:
                user = await repos.users.get_by_email(email)
                user_id = user.id if user else None

            change = await repos.orders.upsert_items(
                order_id,
                lines,
                user_id=user_id,
                order_number=str(payload.get("order_number") or payload.get("name") or "") or None,
                customer_email=email,
                fulfillment_status=payload.get("fulfillment_status"),
                order_date=_parse_datetime(payload.get("created_at")),
                cancelled_at=cancelled_at,
            )
            affected = [user_id] if user_id is not None else []
            if cancelled_at is not None:
                cancelled_users, newly = await repos.orders.cancel(order_id, cancelled_at)
                affected = sorted(set(affected) | set(cancelled_users))
                cancelled = change.cancelled or newly
            else:
                cancelled = False

        reason = "order_cancelled" if cancelled else "fulfillment_downgraded" if change.fulfillment_downgraded else None
        if reason is not None:
            for uid in affected:
                await self.recalc_queue.enqueue(
                    "recalculate",
                    reason,
                    {
                        "user_id": uid,
                        "coin_type": "all",
                        "reason": reason,
                        "context": {"order_id": order_id, "topic": topic},
                    },
                    priority=1 if cancelled else 2,
                )
            logger.info("order_recalculation_enqueued", order_id=order_id, reason=reason, users=affected)

        return {
            "order_id": order_id,
            "created": change.created,
            "updated": change.updated,
            "recalculation": reason,
            "queue": RECALC_QUEUE if reason else None,
        }
