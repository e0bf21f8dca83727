"""Engagement leaderboard over all_time, week and month windows.

Score = sum of points_awarded over user_achievements earned inside the window,
plus a streak bonus from the user's current daily_rank streak. Ties go to the
user whose first qualifying achievement in the window was earned earliest.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.registry import (
    PERIOD_WINDOWS,
    PERIODS,
    CacheRegistry,
    leaderboard_top_key,
    leaderboard_user_key,
    position_key,
)
from coinbook.db.models import User
from coinbook.errors import InvalidInput
from coinbook.repositories.unit_of_work import unit_of_work

# (minimum current daily_rank streak, bonus points); first match wins.
STREAK_BONUS: tuple[tuple[int, int], ...] = ((30, 25), (14, 10), (7, 5))

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def streak_bonus(current_streak: int) -> int:
    for days, bonus in STREAK_BONUS:
        if current_streak >= days:
            return bonus
    return 0


def public_name(user: User | None) -> str:
    """Display name, else first name plus last initial; never the email."""
    if user is None:
        return "Unknown"
    if user.display_name:
        return user.display_name
    first = (user.first_name or "").strip()
    last = (user.last_name or "").strip()
    if first and last:
        return f"{first} {last[0]}."
    return first or "Jerky Fan"


def validate_period(period: str) -> str:
    if period not in PERIODS:
        msg = f"Unknown leaderboard period: {period}"
        raise InvalidInput(msg, details={"valid_periods": list(PERIODS)})
    return period


class LeaderboardService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], caches: CacheRegistry) -> None:
        self.session_factory = session_factory
        self.caches = caches

    async def _standings(self, period: str) -> list[dict[str, Any]]:
        """Full ordered standings for a window, each entry JSON-serializable."""
        since = None
        if period in PERIOD_WINDOWS:
            since = datetime.now(timezone.utc) - PERIOD_WINDOWS[period]

        async with unit_of_work(self.session_factory) as repos:
            scores = await repos.user_achievements.scores(since)
            user_ids = [s.user_id for s in scores]
            streaks = await repos.streaks.current_for_users(user_ids, "daily_rank")

        rows = []
        for s in scores:
            total = s.score + streak_bonus(streaks.get(s.user_id, 0))
            if total <= 0:
                continue
            rows.append((total, s))
        rows.sort(key=lambda r: (-r[0], r[1].first_earned_at, r[1].user_id))

        return [
            {
                "rank": idx,
                "user_id": s.user_id,
                "score": total,
                "achievement_points": s.score,
                "earned_count": s.earned_count,
                "first_earned_at": s.first_earned_at.isoformat() if s.first_earned_at else None,
            }
            for idx, (total, s) in enumerate(rows, start=1)
        ]

    async def standings(self, period: str = "all_time") -> list[dict[str, Any]]:
        validate_period(period)
        return await self.caches.leaderboard.get_or_load(
            f"period:{period}:standings",
            lambda: self._standings(period),
        )

    async def top(self, n: int = DEFAULT_LIMIT, period: str = "all_time") -> list[dict[str, Any]]:
        """Top ``n`` with display names and a few recent badges."""
        validate_period(period)
        n = max(1, min(n, MAX_LIMIT))

        async def load() -> list[dict[str, Any]]:
            entries = (await self.standings(period))[:n]
            user_ids = [e["user_id"] for e in entries]
            async with unit_of_work(self.session_factory) as repos:
                users = await repos.users.get_many(user_ids)
                badges = await repos.user_achievements.recent_codes(user_ids)
            return [
                {
                    **entry,
                    "display_name": public_name(users.get(entry["user_id"])),
                    "badges": badges.get(entry["user_id"], []),
                }
                for entry in entries
            ]

        return await self.caches.leaderboard.get_or_load(leaderboard_top_key(period, n), load)

    async def position(self, user_id: int, period: str = "all_time") -> dict[str, Any] | None:
        """The user's rank and score, or None when they have no points in the window."""
        validate_period(period)

        async def load() -> dict[str, Any] | None:
            standings = await self.standings(period)
            for entry in standings:
                if entry["user_id"] == user_id:
                    return {**entry, "period": period, "total_ranked_users": len(standings)}
            return None

        return await self.caches.leaderboard_position.get_or_load(position_key(user_id, period), load)

    async def rank_of(self, user_id: int, period: str = "all_time") -> int | None:
        entry = await self.position(user_id, period)
        return entry["rank"] if entry else None

    async def user_summary(self, user_id: int) -> dict[str, Any]:
        """Position in every window, cached per (user, window)."""
        summary: dict[str, Any] = {}
        for period in PERIODS:
            summary[period] = await self.caches.leaderboard.get_or_load(
                leaderboard_user_key(user_id, period),
                lambda p=period: self.position(user_id, p),
            )
        return summary

    async def compare(self, user_a: int, user_b: int, period: str = "all_time") -> dict[str, Any]:
        a = await self.position(user_a, period)
        b = await self.position(user_b, period)
        score_a = a["score"] if a else 0
        score_b = b["score"] if b else 0
        return {
            "period": period,
            "user_a": {"user_id": user_a, "rank": a["rank"] if a else None, "score": score_a},
            "user_b": {"user_id": user_b, "rank": b["rank"] if b else None, "score": score_b},
            "score_diff": score_a - score_b,
            "rank_diff": (a["rank"] - b["rank"]) if a and b else None,
            "leader": user_a if score_a > score_b else user_b if score_b > score_a else None,
        }
