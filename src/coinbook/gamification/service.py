"""Gamification facade.

Owns the wiring between the engine, streaks, stats, leaderboard and caches so
routers, the ranking orchestrator, queue workers and the admin recalculator
share one way of evaluating a user.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.registry import CacheRegistry, home_stats_key
from coinbook.errors import DependencyUnavailable, InvalidInput
from coinbook.gamification.definitions import AchievementDefinition, DefinitionStore
from coinbook.gamification.engine import AchievementEngine
from coinbook.gamification.leaderboard_service import LeaderboardService, public_name
from coinbook.gamification.notifications import AwardResult, NotificationSink
from coinbook.gamification.progress import ProgressTracker
from coinbook.gamification.stats import UserStats, UserStatsAggregator
from coinbook.gamification.streak_service import StreakTracker, StreakUpdate
from coinbook.products.service import ProductService
from coinbook.repositories.unit_of_work import Repositories, unit_of_work
from coinbook.telemetry import Telemetry

logger = structlog.get_logger()

PUBLIC_ACTIVITY_TYPES = ("product_ranked", "earn_badge", "streak_milestone")
VIEW_KINDS = ("product", "page", "profile")
TRENDING_WINDOW = timedelta(days=7)


@dataclass
class ActivityOutcome:
    """What one qualifying activity changed for a user."""

    user_id: int
    streak: StreakUpdate | None = None
    awards: list[AwardResult] = field(default_factory=list)


class GamificationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: CacheRegistry,
        definitions: DefinitionStore,
        products: ProductService,
        leaderboard: LeaderboardService,
        telemetry: Telemetry,
        *,
        streaks_zone: Any = timezone.utc,  # noqa: ANN401
        sink: NotificationSink | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.caches = caches
        self.definitions = definitions
        self.products = products
        self.leaderboard = leaderboard
        self.telemetry = telemetry
        self.streaks_zone = streaks_zone
        self.sink = sink
        self.progress_tracker = ProgressTracker()

    # ── Building blocks bound to one unit of work ──

    async def _rankable_count(self) -> int:
        try:
            return await self.products.count_rankable()
        except DependencyUnavailable:
            logger.warning("rankable_count_unavailable")
            return 0

    def aggregator(self, repos: Repositories) -> UserStatsAggregator:
        return UserStatsAggregator(
            repos,
            position_lookup=self.leaderboard.rank_of,
            rankable_counter=self._rankable_count,
        )

    def engine(self, repos: Repositories, *, sink: NotificationSink | None = None) -> AchievementEngine:
        return AchievementEngine(
            repos,
            self.definitions,
            self.products,
            telemetry=self.telemetry,
            sink=sink if sink is not None else self.sink,
            stats_loader=self.aggregator(repos).collect,
        )

    def streak_tracker(self, repos: Repositories) -> StreakTracker:
        return StreakTracker(repos, zone=self.streaks_zone)

    # ── Write paths ──

    async def process_activity(
        self,
        user_id: int,
        streak_type: str | None = "daily_rank",
        at: datetime | None = None,
    ) -> ActivityOutcome:
        """Update a streak, then evaluate every achievement with fresh stats."""
        outcome = ActivityOutcome(user_id=user_id)
        async with unit_of_work(self.session_factory) as repos:
            if streak_type is not None:
                outcome.streak = await self.streak_tracker(repos).update(user_id, streak_type, at)
            stats = await self.aggregator(repos).collect(user_id)
            outcome.awards = await self.engine(repos).evaluate_all(user_id, stats)
        if outcome.awards:
            await self.caches.on_achievements_awarded(user_id)
        return outcome

    async def evaluate_user(self, user_id: int) -> list[AwardResult]:
        return (await self.process_activity(user_id, streak_type=None)).awards

    async def recalculate_definition(
        self,
        user_id: int,
        definition: AchievementDefinition,
        *,
        sink: NotificationSink | None = None,
    ) -> AwardResult | None:
        """Evaluate one definition for one user and persist the result."""
        async with unit_of_work(self.session_factory) as repos:
            engine = self.engine(repos, sink=sink)
            evaluation = await engine.evaluate_one(user_id, definition)
            return await engine.award(user_id, definition, evaluation)

    async def audit_user(
        self,
        user_id: int,
        *,
        coin_type: str | None = None,
        reason: str | None = None,
    ) -> list[dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            return await self.engine(repos).audit(user_id, coin_type=coin_type, reason=reason)

    async def track_view(self, user_id: int | None, kind: str, identifier: str | None = None) -> None:
        if kind not in VIEW_KINDS:
            msg = f"Unknown view kind: {kind}"
            raise InvalidInput(msg, details={"valid_kinds": list(VIEW_KINDS)})
        async with unit_of_work(self.session_factory) as repos:
            if kind == "product":
                if not identifier:
                    msg = "Product views need a product id"
                    raise InvalidInput(msg)
                await repos.views.record_product_view(user_id, identifier)
            else:
                await repos.views.record_page_view(user_id, kind, identifier)

    async def record_search(self, user_id: int | None, query: str, result_count: int) -> None:
        async with unit_of_work(self.session_factory) as repos:
            await repos.views.record_search(user_id, query, result_count)

    # ── Read views ──

    async def stats(self, user_id: int) -> UserStats:
        async with unit_of_work(self.session_factory) as repos:
            return await self.aggregator(repos).collect(user_id)

    async def achievements(self, user_id: int) -> list[dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            stats = await self.aggregator(repos).collect(user_id)
            return await self.engine(repos).get_with_progress(user_id, stats)

    async def progress(self, user_id: int) -> dict[str, Any]:
        async with unit_of_work(self.session_factory) as repos:
            stats = await self.aggregator(repos).collect(user_id)
            items = await self.engine(repos).get_with_progress(user_id, stats)
        milestone = self.progress_tracker.next_milestone(items)
        return {
            "stats": stats.to_dict(),
            "next_milestone": milestone,
            "insights": self.progress_tracker.insights(stats, milestone),
            "earned_count": sum(1 for i in items if i["earned"]),
            "total_count": len(items),
        }

    async def streaks(self, user_id: int) -> list[dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            return await self.streak_tracker(repos).get_all(user_id)

    async def activity_feed(self, limit: int = 20) -> list[dict[str, Any]]:
        limit = max(1, min(limit, 100))
        async with unit_of_work(self.session_factory) as repos:
            rows = await repos.activity.recent(limit, PUBLIC_ACTIVITY_TYPES)
            users = await repos.users.get_many(sorted({r.user_id for r in rows}))
        return [
            {
                "id": r.id,
                "type": r.activity_type,
                "user": {"id": r.user_id, "display_name": public_name(users.get(r.user_id))},
                "data": r.activity_data,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ]

    async def _community_stats(self) -> dict[str, Any]:
        async with unit_of_work(self.session_factory) as repos:
            trending = await repos.views.trending_products(datetime.now(timezone.utc) - TRENDING_WINDOW, 5)
            data = {
                "total_users": await repos.users.count(),
                "total_rankings": await repos.rankings.total_count(),
                "achievements_earned": await repos.user_achievements.count_all(),
                "trending_products": [{"product_id": pid, "views": views} for pid, views in trending],
            }
        data["top_rankers"] = await self.leaderboard.top(3)
        return data

    async def home_stats(self, user_id: int | None = None) -> dict[str, Any]:
        community = await self.caches.home_stats.get_or_load(home_stats_key(), self._community_stats)
        if user_id is None:
            return {"community": community}

        async def load_user() -> dict[str, Any]:
            progress = await self.progress(user_id)
            return {
                "stats": progress["stats"],
                "next_milestone": progress["next_milestone"],
                "position": await self.leaderboard.position(user_id),
            }

        personal = await self.caches.home_stats.get_or_load(home_stats_key(user_id), load_user)
        return {"community": community, "user": personal}

    async def hero_stats(self) -> dict[str, Any]:
        community = await self.caches.home_stats.get_or_load(home_stats_key(), self._community_stats)
        return {
            "total_users": community["total_users"],
            "total_rankings": community["total_rankings"],
            "achievements_earned": community["achievements_earned"],
            "products_available": await self._rankable_count(),
        }
