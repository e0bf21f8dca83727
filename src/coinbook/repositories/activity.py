"""Append-only logs: activity, product views, page views and searches.

Rows are only ever inserted with the current time; nothing here updates or
backdates an existing row.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import distinct, func, select, union
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import ActivityLog, PageView, ProductSearch, ProductView


class ActivityRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def log(self, user_id: int, activity_type: str, data: dict[str, Any] | None = None) -> ActivityLog:
        row = ActivityLog(
            user_id=user_id,
            activity_type=activity_type,
            activity_data=data or {},
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def count(self, user_id: int, activity_type: str) -> int:
        total = await self.db.scalar(
            select(func.count(ActivityLog.id)).where(
                ActivityLog.user_id == user_id,
                ActivityLog.activity_type == activity_type,
            )
        )
        return int(total or 0)

    async def recent(self, limit: int = 20, types: tuple[str, ...] | None = None) -> list[ActivityLog]:
        query = select(ActivityLog).order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
        if types:
            query = query.where(ActivityLog.activity_type.in_(types))
        result = await self.db.execute(query)
        return list(result.scalars())

    async def user_ids_with_activity(self) -> list[int]:
        """Users with at least one activity, page view or search row."""
        combined = union(
            select(ActivityLog.user_id),
            select(PageView.user_id).where(PageView.user_id.is_not(None)),
            select(ProductSearch.user_id).where(ProductSearch.user_id.is_not(None)),
        ).subquery()
        result = await self.db.execute(select(distinct(combined.c.user_id)).order_by(combined.c.user_id))
        return [uid for uid in result.scalars() if uid is not None]


class ViewRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record_product_view(self, user_id: int | None, product_id: str) -> None:
        now = datetime.now(timezone.utc)
        self.db.add(ProductView(user_id=user_id, shopify_product_id=product_id, viewed_at=now))
        self.db.add(PageView(user_id=user_id, page_type="product_detail", page_identifier=product_id, viewed_at=now))
        await self.db.flush()

    async def record_page_view(self, user_id: int | None, page_type: str, identifier: str | None = None) -> None:
        self.db.add(
            PageView(
                user_id=user_id,
                page_type=page_type,
                page_identifier=identifier,
                viewed_at=datetime.now(timezone.utc),
            )
        )
        await self.db.flush()

    async def record_search(self, user_id: int | None, query: str, result_count: int) -> None:
        self.db.add(
            ProductSearch(
                user_id=user_id,
                query=query[:256],
                result_count=result_count,
                searched_at=datetime.now(timezone.utc),
            )
        )
        await self.db.flush()

    async def count_page_views(self, user_id: int, page_type: str | None = None, *, unique: bool = False) -> int:
        column = func.count(distinct(PageView.page_identifier)) if unique else func.count(PageView.id)
        query = select(column).where(PageView.user_id == user_id)
        if page_type is not None:
            query = query.where(PageView.page_type == page_type)
        return int(await self.db.scalar(query) or 0)

    async def count_searches(self, user_id: int) -> int:
        total = await self.db.scalar(select(func.count(ProductSearch.id)).where(ProductSearch.user_id == user_id))
        return int(total or 0)

    async def trending_products(self, since: datetime, limit: int = 10) -> list[tuple[str, int]]:
        result = await self.db.execute(
            select(ProductView.shopify_product_id, func.count(ProductView.id).label("views"))
            .where(ProductView.viewed_at >= since)
            .group_by(ProductView.shopify_product_id)
            .order_by(func.count(ProductView.id).desc())
            .limit(limit)
        )
        return [(pid, int(views)) for pid, views in result.all()]
