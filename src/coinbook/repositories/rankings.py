"""Ranking lists, ranking statistics and ranking-operation tokens."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import ProductRanking, RankingOperation

DEFAULT_LIST = "default"


@dataclass(frozen=True)
class RankingInput:
    product_id: str
    ranking: int
    product_data: dict[str, Any]


@dataclass(frozen=True)
class ProductRankingStats:
    product_id: str
    ranking_count: int
    unique_rankers: int
    avg_rank: float | None
    best_rank: int | None
    worst_rank: int | None
    last_ranked_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ranking_count": self.ranking_count,
            "unique_rankers": self.unique_rankers,
            "avg_rank": self.avg_rank,
            "best_rank": self.best_rank,
            "worst_rank": self.worst_rank,
            "last_ranked_at": self.last_ranked_at.isoformat() if self.last_ranked_at else None,
        }


class RankingRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def clear(self, user_id: int, list_id: str = DEFAULT_LIST) -> list[datetime]:
        """Delete a list; returns the creation times of the removed rows."""
        result = await self.db.execute(
            select(ProductRanking.created_at).where(
                ProductRanking.user_id == user_id,
                ProductRanking.ranking_list_id == list_id,
            )
        )
        removed = list(result.scalars())
        await self.db.execute(
            delete(ProductRanking).where(
                ProductRanking.user_id == user_id,
                ProductRanking.ranking_list_id == list_id,
            )
        )
        return removed

    async def replace_list(
        self,
        user_id: int,
        list_id: str,
        rankings: Sequence[RankingInput],
    ) -> tuple[list[ProductRanking], list[datetime]]:
        """Clear-then-insert inside the caller's transaction.

        Returns the inserted rows and the creation times of the cleared ones.
        """
        removed = await self.clear(user_id, list_id)
        now = datetime.now(timezone.utc)
        rows = [
            ProductRanking(
                user_id=user_id,
                shopify_product_id=r.product_id,
                ranking_list_id=list_id,
                ranking=r.ranking,
                product_data=r.product_data,
                created_at=now,
                updated_at=now,
            )
            for r in rankings
        ]
        self.db.add_all(rows)
        await self.db.flush()
        return rows, removed

    async def upsert_one(
        self,
        user_id: int,
        product_id: str,
        list_id: str,
        ranking: int,
        product_data: dict[str, Any],
    ) -> ProductRanking:
        """Natural key (user, product, list)."""
        result = await self.db.execute(
            select(ProductRanking).where(
                ProductRanking.user_id == user_id,
                ProductRanking.shopify_product_id == product_id,
                ProductRanking.ranking_list_id == list_id,
            )
        )
        row = result.scalar_one_or_none()
        now = datetime.now(timezone.utc)
        if row is None:
            row = ProductRanking(
                user_id=user_id,
                shopify_product_id=product_id,
                ranking_list_id=list_id,
                ranking=ranking,
                product_data=product_data,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
        else:
            row.ranking = ranking
            row.product_data = product_data or row.product_data
            row.updated_at = now
        await self.db.flush()
        return row

    async def list_for_user(self, user_id: int, list_id: str = DEFAULT_LIST) -> list[ProductRanking]:
        result = await self.db.execute(
            select(ProductRanking)
            .where(ProductRanking.user_id == user_id, ProductRanking.ranking_list_id == list_id)
            .order_by(ProductRanking.ranking, ProductRanking.id)
        )
        return list(result.scalars())

    async def ranked_product_ids(self, user_id: int, list_id: str | None = None) -> set[str]:
        query = select(distinct(ProductRanking.shopify_product_id)).where(ProductRanking.user_id == user_id)
        if list_id is not None:
            query = query.where(ProductRanking.ranking_list_id == list_id)
        result = await self.db.execute(query)
        return set(result.scalars())

    async def count_ranked_in(self, user_id: int, product_ids: Iterable[str]) -> int:
        """Distinct products from ``product_ids`` the user has ranked on any list."""
        ids = list(set(product_ids))
        if not ids:
            return 0
        count = await self.db.scalar(
            select(func.count(distinct(ProductRanking.shopify_product_id))).where(
                ProductRanking.user_id == user_id,
                ProductRanking.shopify_product_id.in_(ids),
            )
        )
        return int(count or 0)

    async def totals(self, user_id: int) -> tuple[int, int]:
        """(ranking rows, distinct products) for a user."""
        row = (
            await self.db.execute(
                select(
                    func.count(ProductRanking.id),
                    func.count(distinct(ProductRanking.shopify_product_id)),
                ).where(ProductRanking.user_id == user_id)
            )
        ).one()
        return int(row[0] or 0), int(row[1] or 0)

    async def total_count(self) -> int:
        return int(await self.db.scalar(select(func.count(ProductRanking.id))) or 0)

    async def stats_by_product(self) -> dict[str, ProductRankingStats]:
        result = await self.db.execute(
            select(
                ProductRanking.shopify_product_id,
                func.count(ProductRanking.id),
                func.count(distinct(ProductRanking.user_id)),
                func.avg(ProductRanking.ranking),
                func.min(ProductRanking.ranking),
                func.max(ProductRanking.ranking),
                func.max(ProductRanking.created_at),
            ).group_by(ProductRanking.shopify_product_id)
        )
        stats: dict[str, ProductRankingStats] = {}
        for product_id, count, rankers, avg, best, worst, last in result.all():
            stats[product_id] = ProductRankingStats(
                product_id=product_id,
                ranking_count=int(count),
                unique_rankers=int(rankers),
                avg_rank=round(float(avg), 2) if avg is not None else None,
                best_rank=best,
                worst_rank=worst,
                last_ranked_at=last,
            )
        return stats

    async def user_ids_with_rankings(self) -> list[int]:
        result = await self.db.execute(select(distinct(ProductRanking.user_id)).order_by(ProductRanking.user_id))
        return list(result.scalars())


class RankingOperationRepository:
    """Idempotency tokens keyed by ``op_id``."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, op_id: str) -> RankingOperation | None:
        result = await self.db.execute(select(RankingOperation).where(RankingOperation.op_id == op_id))
        return result.scalar_one_or_none()

    async def begin(
        self,
        op_id: str,
        user_id: int,
        product_id: str,
        list_id: str,
        ranking: int,
    ) -> tuple[RankingOperation, bool]:
        """Return (operation, created); an existing token is returned unchanged."""
        existing = await self.get(op_id)
        if existing is not None:
            return existing, False
        op = RankingOperation(
            op_id=op_id,
            user_id=user_id,
            shopify_product_id=product_id,
            ranking_list_id=list_id,
            ranking=ranking,
            status="pending",
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(op)
        await self.db.flush()
        return op, True

    async def mark(self, op: RankingOperation, status: str) -> None:
        op.status = status
        await self.db.flush()
