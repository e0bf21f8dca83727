"""Achievement definitions and per-user achievement state."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import Achievement, UserAchievement

DEFINITION_FIELDS = (
    "code",
    "name",
    "description",
    "icon",
    "collection_type",
    "category",
    "requirement",
    "has_tiers",
    "tier_thresholds",
    "points",
    "is_hidden",
    "is_active",
    "prerequisite_achievement_id",
    "protein_categories",
)


@dataclass(frozen=True)
class ScoreRow:
    user_id: int
    score: int
    first_earned_at: datetime | None
    earned_count: int


class AchievementRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_all(self, *, active_only: bool = True) -> list[Achievement]:
        query = select(Achievement).order_by(Achievement.id)
        if active_only:
            query = query.where(Achievement.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars())

    async def get(self, achievement_id: int) -> Achievement | None:
        return await self.db.get(Achievement, achievement_id)

    async def get_by_code(self, code: str) -> Achievement | None:
        result = await self.db.execute(select(Achievement).where(Achievement.code == code))
        return result.scalar_one_or_none()

    async def upsert_by_code(self, fields: dict[str, Any]) -> tuple[Achievement, bool]:
        """Idempotent on ``code``; returns (definition, created)."""
        existing = await self.get_by_code(fields["code"])
        now = datetime.now(timezone.utc)
        if existing is None:
            row = Achievement(**{k: v for k, v in fields.items() if k in DEFINITION_FIELDS}, created_at=now, updated_at=now)
            self.db.add(row)
            await self.db.flush()
            return row, True
        await self.update(existing, fields)
        return existing, False

    async def update(self, achievement: Achievement, changes: dict[str, Any]) -> Achievement:
        for key, value in changes.items():
            if key in DEFINITION_FIELDS and key != "code":
                setattr(achievement, key, value)
        achievement.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        return achievement


class UserAchievementRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: int, achievement_id: int) -> UserAchievement | None:
        result = await self.db.execute(
            select(UserAchievement).where(
                UserAchievement.user_id == user_id,
                UserAchievement.achievement_id == achievement_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> list[UserAchievement]:
        result = await self.db.execute(
            select(UserAchievement)
            .where(UserAchievement.user_id == user_id)
            .order_by(UserAchievement.earned_at.desc(), UserAchievement.id.desc())
        )
        return list(result.scalars())

    async def earned_ids(self, user_id: int) -> set[int]:
        result = await self.db.execute(
            select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
        )
        return set(result.scalars())

    async def create(
        self,
        user_id: int,
        achievement_id: int,
        *,
        tier: str | None,
        percentage: int,
        points: int,
        progress: dict[str, Any],
        earned_at: datetime | None = None,
    ) -> UserAchievement:
        now = earned_at or datetime.now(timezone.utc)
        row = UserAchievement(
            user_id=user_id,
            achievement_id=achievement_id,
            current_tier=tier,
            percentage_complete=percentage,
            points_awarded=points,
            progress=progress,
            earned_at=now,
            updated_at=now,
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def save(self, row: UserAchievement) -> None:
        row.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

    async def total_points(self, user_id: int) -> int:
        total = await self.db.scalar(
            select(func.coalesce(func.sum(UserAchievement.points_awarded), 0)).where(
                UserAchievement.user_id == user_id
            )
        )
        return int(total or 0)

    async def count_all(self) -> int:
        return int(await self.db.scalar(select(func.count(UserAchievement.id))) or 0)

    async def scores(self, since: datetime | None = None) -> list[ScoreRow]:
        """Per-user point totals over achievements earned since ``since``."""
        query = select(
            UserAchievement.user_id,
            func.sum(UserAchievement.points_awarded),
            func.min(UserAchievement.earned_at),
            func.count(UserAchievement.id),
        ).group_by(UserAchievement.user_id)
        if since is not None:
            query = query.where(UserAchievement.earned_at >= since)
        result = await self.db.execute(query)
        return [
            ScoreRow(user_id=uid, score=int(total or 0), first_earned_at=first, earned_count=int(count))
            for uid, total, first, count in result.all()
        ]

    async def recent_codes(self, user_ids: list[int], per_user: int = 3) -> dict[int, list[dict[str, Any]]]:
        """Most recently earned achievements per user, for leaderboard badges."""
        if not user_ids:
            return {}
        result = await self.db.execute(
            select(UserAchievement.user_id, Achievement.code, Achievement.icon, UserAchievement.current_tier)
            .join(Achievement, Achievement.id == UserAchievement.achievement_id)
            .where(UserAchievement.user_id.in_(user_ids), Achievement.is_hidden.is_(False))
            .order_by(UserAchievement.earned_at.desc(), UserAchievement.id.desc())
        )
        badges: dict[int, list[dict[str, Any]]] = defaultdict(list)
        for uid, code, icon, tier in result.all():
            if len(badges[uid]) < per_user:
                badges[uid].append({"code": code, "icon": icon, "tier": tier})
        return dict(badges)
