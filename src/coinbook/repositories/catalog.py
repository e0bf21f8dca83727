"""Product metadata and purchased order items."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, distinct, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import CustomerOrderItem, ProductMetadata

METADATA_FIELDS = (
    "title",
    "vendor",
    "animal_type",
    "animal_display",
    "animal_icon",
    "primary_flavor",
    "secondary_flavors",
    "flavor_display",
    "flavor_icon",
    "force_rankable",
)


def metadata_to_dict(row: ProductMetadata) -> dict[str, Any]:
    return {"shopify_product_id": row.shopify_product_id, **{f: getattr(row, f) for f in METADATA_FIELDS}}


class MetadataRepository:
    """Natural key: shopify_product_id."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, product_id: str) -> ProductMetadata | None:
        result = await self.db.execute(
            select(ProductMetadata).where(ProductMetadata.shopify_product_id == product_id)
        )
        return result.scalar_one_or_none()

    async def all(self) -> list[ProductMetadata]:
        result = await self.db.execute(select(ProductMetadata).order_by(ProductMetadata.shopify_product_id))
        return list(result.scalars())

    async def upsert(self, product_id: str, fields: dict[str, Any]) -> tuple[ProductMetadata, bool]:
        """Returns (row, changed). Re-applying the same fields changes nothing."""
        values = {k: v for k, v in fields.items() if k in METADATA_FIELDS}
        row = await self.get(product_id)
        now = datetime.now(timezone.utc)
        if row is None:
            row = ProductMetadata(shopify_product_id=product_id, created_at=now, updated_at=now, **values)
            self.db.add(row)
            await self.db.flush()
            return row, True

        changed = False
        for key, value in values.items():
            if getattr(row, key) != value:
                setattr(row, key, value)
                changed = True
        if changed:
            row.updated_at = now
            await self.db.flush()
        return row, changed

    async def upsert_many(self, items: dict[str, dict[str, Any]]) -> int:
        changed = 0
        for product_id, fields in items.items():
            _, did_change = await self.upsert(product_id, fields)
            changed += int(did_change)
        return changed

    async def delete(self, product_id: str) -> bool:
        result = await self.db.execute(
            delete(ProductMetadata).where(ProductMetadata.shopify_product_id == product_id)
        )
        return bool(result.rowcount)

    async def force_rankable_ids(self) -> set[str]:
        result = await self.db.execute(
            select(ProductMetadata.shopify_product_id).where(ProductMetadata.force_rankable.is_(True))
        )
        return set(result.scalars())


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    sku: str | None = None
    quantity: int = 1


@dataclass(frozen=True)
class OrderChange:
    created: int
    updated: int
    cancelled: bool
    fulfillment_downgraded: bool


class OrderRepository:
    """Natural key: (order_id, shopify_product_id)."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def items_for_order(self, order_id: str) -> list[CustomerOrderItem]:
        result = await self.db.execute(
            select(CustomerOrderItem).where(CustomerOrderItem.order_id == order_id).order_by(CustomerOrderItem.id)
        )
        return list(result.scalars())

    async def upsert_items(
        self,
        order_id: str,
        lines: Sequence[OrderLine],
        *,
        user_id: int | None,
        order_number: str | None = None,
        customer_email: str | None = None,
        fulfillment_status: str | None = None,
        order_date: datetime | None = None,
        cancelled_at: datetime | None = None,
    ) -> OrderChange:
        existing = {item.shopify_product_id: item for item in await self.items_for_order(order_id)}
        was_cancelled = any(item.cancelled_at is not None for item in existing.values())
        was_fulfilled = any(item.fulfillment_status == "fulfilled" for item in existing.values())
        now = datetime.now(timezone.utc)

        created = updated = 0
        for line in lines:
            item = existing.get(line.product_id)
            if item is None:
                self.db.add(
                    CustomerOrderItem(
                        order_id=order_id,
                        order_number=order_number,
                        user_id=user_id,
                        customer_email=customer_email,
                        shopify_product_id=line.product_id,
                        sku=line.sku,
                        quantity=line.quantity,
                        fulfillment_status=fulfillment_status,
                        order_date=order_date or now,
                        cancelled_at=cancelled_at,
                        updated_at=now,
                    )
                )
                created += 1
                continue
            before = (item.user_id, item.quantity, item.fulfillment_status, item.cancelled_at, item.sku)
            item.user_id = user_id if user_id is not None else item.user_id
            item.quantity = line.quantity
            item.sku = line.sku or item.sku
            item.fulfillment_status = fulfillment_status
            item.cancelled_at = item.cancelled_at or cancelled_at
            if before != (item.user_id, item.quantity, item.fulfillment_status, item.cancelled_at, item.sku):
                item.updated_at = now
                updated += 1
        await self.db.flush()

        return OrderChange(
            created=created,
            updated=updated,
            cancelled=cancelled_at is not None and not was_cancelled,
            fulfillment_downgraded=was_fulfilled and fulfillment_status != "fulfilled",
        )

    async def cancel(self, order_id: str, cancelled_at: datetime | None = None) -> tuple[list[int], bool]:
        """Mark every item cancelled; returns (affected user ids, newly cancelled)."""
        items = await self.items_for_order(order_id)
        when = cancelled_at or datetime.now(timezone.utc)
        newly = False
        for item in items:
            if item.cancelled_at is None:
                item.cancelled_at = when
                item.updated_at = when
                newly = True
        await self.db.flush()
        return sorted({i.user_id for i in items if i.user_id is not None}), newly

    async def purchased_product_ids(self, user_id: int) -> set[str]:
        result = await self.db.execute(
            select(distinct(CustomerOrderItem.shopify_product_id)).where(
                CustomerOrderItem.user_id == user_id,
                CustomerOrderItem.cancelled_at.is_(None),
            )
        )
        return set(result.scalars())
