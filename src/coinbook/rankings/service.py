"""Ranking writes and the side effects that follow them.

The HTTP response is sent once the transaction commits and the caches are
invalidated; streaks, achievements and broadcasts run afterwards on the task
runner and never fail the request.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.registry import CacheRegistry
from coinbook.db.models import ProductRanking, User
from coinbook.errors import Conflict, InvalidInput
from coinbook.gamification.leaderboard_service import public_name
from coinbook.gamification.service import GamificationService
from coinbook.repositories.rankings import DEFAULT_LIST, RankingInput
from coinbook.repositories.unit_of_work import unit_of_work
from coinbook.tasks import TaskRunner
from coinbook.ws.gateway import Gateway

logger = structlog.get_logger()


def find_duplicates(product_ids: Sequence[str]) -> list[str]:
    return sorted(pid for pid, n in Counter(product_ids).items() if n > 1)


def ranking_to_dict(row: ProductRanking) -> dict[str, Any]:
    return {
        "product_id": row.shopify_product_id,
        "rank": row.ranking,
        "product_data": row.product_data,
        "created_at": row.created_at.isoformat(),
        "updated_at": row.updated_at.isoformat(),
    }


class RankingOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: CacheRegistry,
        gamification: GamificationService,
        gateway: Gateway,
        tasks: TaskRunner,
    ) -> None:
        self.session_factory = session_factory
        self.caches = caches
        self.gamification = gamification
        self.gateway = gateway
        self.tasks = tasks

    async def save_rankings(
        self,
        user: User,
        list_id: str,
        rankings: Sequence[RankingInput],
    ) -> int:
        """Replace a ranking list; returns the number of rows saved."""
        duplicates = find_duplicates([r.product_id for r in rankings])
        if duplicates:
            msg = "Duplicate product ids in rankings"
            raise InvalidInput(msg, details={"duplicates": duplicates})

        list_id = list_id or DEFAULT_LIST
        async with unit_of_work(self.session_factory) as repos:
            rows, removed = await repos.rankings.replace_list(user.id, list_id, rankings)
            saved_at = [r.created_at for r in rows]

        await self.caches.on_rankings_changed(user.id, [*removed, *saved_at])
        logger.info("rankings_saved", user_id=user.id, list_id=list_id, count=len(rows), replaced=len(removed))

        if rankings:
            self.tasks.spawn(
                "rankings_side_effects",
                self._after_save(user, list(rankings)),
                user_id=user.id,
                list_id=list_id,
            )
        return len(rows)

    async def clear(self, user: User, list_id: str = DEFAULT_LIST) -> int:
        async with unit_of_work(self.session_factory) as repos:
            removed = await repos.rankings.clear(user.id, list_id)
        await self.caches.on_rankings_changed(user.id, removed)
        logger.info("rankings_cleared", user_id=user.id, list_id=list_id, removed=len(removed))
        return len(removed)

    async def list_rankings(self, user: User, list_id: str = DEFAULT_LIST) -> list[dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            rows = await repos.rankings.list_for_user(user.id, list_id)
        return [ranking_to_dict(r) for r in rows]

    async def apply_operation(
        self,
        user: User,
        op_id: str,
        ranking: RankingInput,
        list_id: str = DEFAULT_LIST,
    ) -> dict[str, Any]:
        """Apply one ranking; replaying an ``op_id`` returns the first outcome."""
        async with unit_of_work(self.session_factory) as repos:
            op, created = await repos.ranking_operations.begin(
                op_id, user.id, ranking.product_id, list_id, ranking.ranking
            )
            if not created:
                if op.user_id != user.id:
                    msg = "Operation id already used"
                    raise Conflict(msg)
                return {"op_id": op_id, "status": op.status, "applied": False}
            row = await repos.rankings.upsert_one(
                user.id, ranking.product_id, list_id, ranking.ranking, ranking.product_data
            )
            await repos.ranking_operations.mark(op, "applied")
            saved_at = row.created_at

        await self.caches.on_rankings_changed(user.id, [saved_at])
        self.tasks.spawn("ranking_operation_side_effects", self._after_save(user, [ranking]), user_id=user.id)
        return {"op_id": op_id, "status": "applied", "applied": True}

    async def _after_save(self, user: User, rankings: list[RankingInput]) -> None:
        outcome = await self.gamification.process_activity(user.id, "daily_rank")
        if outcome.streak is not None and outcome.streak.changed:
            await self.gateway.streak_updated(outcome.streak)
        if outcome.awards:
            await self.gateway.leaderboard_updated({"user_id": user.id, "reason": "achievements_awarded"})

        display_name = public_name(user)
        for r in rankings:
            await self.gateway.activity(
                "product_ranked",
                user.id,
                {"product_id": r.product_id, "title": r.product_data.get("title"), "rank": r.ranking},
                display_name=display_name,
            )
        async with unit_of_work(self.session_factory) as repos:
            for r in rankings:
                await repos.activity.log(
                    user.id,
                    "product_ranked",
                    {"product_id": r.product_id, "title": r.product_data.get("title"), "rank": r.ranking},
                )
        logger.debug("rankings_side_effects_done", user_id=user.id, awards=len(outcome.awards))
