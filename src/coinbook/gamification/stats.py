"""User stats aggregator.

Collects every counter the achievement engine and progress tracker read in one
call, so a single ``evaluate_all`` pass sees consistent inputs.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from coinbook.repositories.unit_of_work import Repositories

UNRANKED_POSITION = 999

PositionLookup = Callable[[int], Awaitable["int | None"]]
RankableCounter = Callable[[], Awaitable[int]]


@dataclass
class UserStats:
    user_id: int
    total_rankings: int = 0
    unique_products: int = 0
    unique_flavors: int = 0
    unique_animals: int = 0
    total_searches: int = 0
    total_page_views: int = 0
    product_views: int = 0
    unique_product_views: int = 0
    profile_views: int = 0
    unique_profile_views: int = 0
    current_streak: int = 0
    login_streak: int = 0
    longest_streak: int = 0
    leaderboard_position: int = UNRANKED_POSITION
    total_points: int = 0
    total_rankable: int = 0
    completed_animal_categories: int = 0
    joined_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["joined_at"] = self.joined_at.isoformat() if self.joined_at else None
        return data


class UserStatsAggregator:
    def __init__(
        self,
        repos: Repositories,
        *,
        position_lookup: PositionLookup | None = None,
        rankable_counter: RankableCounter | None = None,
    ) -> None:
        self.repos = repos
        self.position_lookup = position_lookup
        self.rankable_counter = rankable_counter

    async def collect(self, user_id: int) -> UserStats:
        repos = self.repos
        user = await repos.users.get(user_id)
        total_rankings, unique_products = await repos.rankings.totals(user_id)
        ranked = await repos.rankings.ranked_product_ids(user_id)

        flavors: set[str] = set()
        animals: set[str] = set()
        products_by_animal: dict[str, set[str]] = defaultdict(set)
        for meta in await repos.metadata.all():
            if meta.animal_type:
                products_by_animal[meta.animal_type].add(meta.shopify_product_id)
            if meta.shopify_product_id not in ranked:
                continue
            if meta.primary_flavor:
                flavors.add(meta.primary_flavor)
            if meta.animal_type:
                animals.add(meta.animal_type)
        completed_animals = sum(1 for ids in products_by_animal.values() if ids and ids <= ranked)

        streaks = {s.streak_type: s for s in await repos.streaks.list_for_user(user_id)}
        daily = streaks.get("daily_rank")
        login = streaks.get("login")

        position = await self.position_lookup(user_id) if self.position_lookup else None

        return UserStats(
            user_id=user_id,
            total_rankings=total_rankings,
            unique_products=unique_products,
            unique_flavors=len(flavors),
            unique_animals=len(animals),
            total_searches=await repos.views.count_searches(user_id),
            total_page_views=await repos.views.count_page_views(user_id),
            product_views=await repos.views.count_page_views(user_id, "product_detail"),
            unique_product_views=await repos.views.count_page_views(user_id, "product_detail", unique=True),
            profile_views=await repos.views.count_page_views(user_id, "profile"),
            unique_profile_views=await repos.views.count_page_views(user_id, "profile", unique=True),
            current_streak=daily.current_streak if daily else 0,
            login_streak=login.current_streak if login else 0,
            longest_streak=max((s.longest_streak for s in streaks.values()), default=0),
            leaderboard_position=position or UNRANKED_POSITION,
            total_points=await repos.user_achievements.total_points(user_id),
            total_rankable=await self.rankable_counter() if self.rankable_counter else 0,
            completed_animal_categories=completed_animals,
            joined_at=user.created_at if user else None,
        )
