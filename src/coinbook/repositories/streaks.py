"""Streak rows, one per (user, streak_type)."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import Streak


class StreakRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: int, streak_type: str) -> Streak | None:
        result = await self.db.execute(
            select(Streak).where(Streak.user_id == user_id, Streak.streak_type == streak_type)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: int, streak_type: str) -> Streak:
        """Initial state is zeros with no activity date."""
        streak = await self.get(user_id, streak_type)
        if streak is None:
            streak = Streak(
                user_id=user_id,
                streak_type=streak_type,
                current_streak=0,
                longest_streak=0,
                last_activity_date=None,
                updated_at=datetime.now(timezone.utc),
            )
            self.db.add(streak)
            await self.db.flush()
        return streak

    async def save(self, streak: Streak) -> None:
        streak.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

    async def list_for_user(self, user_id: int) -> list[Streak]:
        result = await self.db.execute(select(Streak).where(Streak.user_id == user_id).order_by(Streak.streak_type))
        return list(result.scalars())

    async def current(self, user_id: int, streak_type: str) -> int:
        streak = await self.get(user_id, streak_type)
        return streak.current_streak if streak else 0

    async def current_for_users(self, user_ids: list[int], streak_type: str) -> dict[int, int]:
        if not user_ids:
            return {}
        result = await self.db.execute(
            select(Streak.user_id, Streak.current_streak).where(
                Streak.user_id.in_(user_ids),
                Streak.streak_type == streak_type,
            )
        )
        return {uid: int(current) for uid, current in result.all()}
