"""Default achievement definitions, inserted once by code."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.repositories.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict[str, Any]] = [
    # Ranking milestones
    {
        "code": "first_rank",
        "name": "First Bite",
        "description": "Rank your first jerky",
        "icon": "🥩",
        "collection_type": "engagement",
        "category": "ranking",
        "requirement": {"type": "rank_count", "value": 1},
        "points": 10,
    },
    {
        "code": "rank_10",
        "name": "Taste Tester",
        "description": "Rank 10 products",
        "icon": "🏅",
        "collection_type": "engagement",
        "category": "ranking",
        "requirement": {"type": "rank_count", "value": 10},
        "points": 25,
    },
    {
        "code": "rank_50",
        "name": "Jerky Judge",
        "description": "Rank 50 products",
        "icon": "⚖️",
        "collection_type": "engagement",
        "category": "ranking",
        "requirement": {"type": "rank_count", "value": 50},
        "points": 75,
    },
    # Streaks
    {
        "code": "streak_7",
        "name": "Week of Flavor",
        "description": "Rank something seven days in a row",
        "icon": "🔥",
        "collection_type": "engagement",
        "category": "streak",
        "requirement": {"type": "streak_days", "value": 7},
        "points": 30,
    },
    {
        "code": "login_streak_7",
        "name": "Regular",
        "description": "Visit seven days in a row",
        "icon": "📅",
        "collection_type": "engagement",
        "category": "streak",
        "requirement": {"type": "daily_login_streak", "value": 7},
        "points": 15,
    },
    # Exploration
    {
        "code": "searcher",
        "name": "Curious Chewer",
        "description": "Search the catalog 10 times",
        "icon": "🔍",
        "collection_type": "engagement",
        "category": "exploration",
        "requirement": {"type": "search_count", "value": 10},
        "points": 10,
    },
    {
        "code": "browser",
        "name": "Window Shopper",
        "description": "View 25 different products",
        "icon": "👀",
        "collection_type": "engagement",
        "category": "exploration",
        "requirement": {"type": "unique_product_view_count", "value": 25},
        "points": 10,
    },
    # Collections
    {
        "code": "complete_collection",
        "name": "Completionist",
        "description": "Rank every product in the catalog",
        "icon": "🪙",
        "collection_type": "dynamic_collection",
        "category": "collection",
        "requirement": {"type": "complete_collection"},
        "has_tiers": True,
        "points": 500,
    },
    {
        "code": "beef_collection",
        "name": "Beef Connoisseur",
        "description": "Rank the beef lineup",
        "icon": "🐄",
        "collection_type": "dynamic_collection",
        "category": "collection",
        "requirement": {"type": "animal_collection", "categories": ["Beef"]},
        "has_tiers": True,
        "points": 150,
    },
    {
        "code": "exotic_collection",
        "name": "Wild Side",
        "description": "Rank the exotic meats",
        "icon": "🦬",
        "collection_type": "dynamic_collection",
        "category": "collection",
        "requirement": {"type": "animal_collection"},
        "protein_categories": ["Bison", "Elk", "Venison", "Wild Boar", "Alligator", "Kangaroo", "Ostrich"],
        "has_tiers": True,
        "points": 200,
    },
    {
        "code": "spicy_collection",
        "name": "Heat Seeker",
        "description": "Rank the spicy flavors",
        "icon": "🌶️",
        "collection_type": "dynamic_collection",
        "category": "collection",
        "requirement": {"type": "flavor_collection", "flavors": ["spicy"]},
        "has_tiers": True,
        "points": 150,
    },
    # Hidden
    {
        "code": "early_adopter",
        "name": "Early Adopter",
        "description": "Joined during the launch season",
        "icon": "🌱",
        "collection_type": "hidden",
        "category": "special",
        "requirement": {"type": "join_before", "value": "2025-01-01"},
        "is_hidden": True,
        "points": 50,
    },
]


async def seed_achievements(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Insert missing definitions; existing codes are left as admins edited them."""
    created = 0
    async with unit_of_work(session_factory) as repos:
        for data in ACHIEVEMENT_SEED_DATA:
            if await repos.achievements.get_by_code(data["code"]) is not None:
                continue
            await repos.achievements.upsert_by_code(data)
            created += 1
    if created:
        logger.info("Seeded %d achievement definition(s)", created)
    return created
