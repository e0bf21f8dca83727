"""Streak tracking: daily activity updates per (user, streak_type)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from coinbook.errors import InvalidInput
from coinbook.repositories.unit_of_work import Repositories

logger = logging.getLogger(__name__)

STREAK_TYPES = ("daily_rank", "login")
MILESTONE_INTERVAL = 7
BROKEN_LOG_MIN_STREAK = 3


def resolve_zone(name: str) -> timezone | ZoneInfo:
    return timezone.utc if name.upper() == "UTC" else ZoneInfo(name)


def activity_date(at: datetime, zone: timezone | ZoneInfo) -> date:
    """Calendar date of ``at`` in the configured zone; naive datetimes are UTC."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at.astimezone(zone).date()


def validate_streak_type(streak_type: str) -> str:
    if streak_type not in STREAK_TYPES:
        msg = f"Unknown streak type: {streak_type}"
        raise InvalidInput(msg, details={"valid_types": list(STREAK_TYPES)})
    return streak_type


@dataclass(frozen=True)
class StreakUpdate:
    user_id: int
    streak_type: str
    current_streak: int
    longest_streak: int
    continued: bool
    broken: bool
    previous_streak: int | None = None
    changed: bool = True

    @property
    def milestone(self) -> bool:
        return self.changed and self.continued and self.current_streak % MILESTONE_INTERVAL == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "streak_type": self.streak_type,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "previous_streak": self.previous_streak,
            "continued": self.continued,
            "broken": self.broken,
        }


class StreakTracker:
    """Applies the daily update rule; one logical writer per user is assumed."""

    def __init__(self, repos: Repositories, *, zone: timezone | ZoneInfo = timezone.utc) -> None:
        self.repos = repos
        self.zone = zone

    async def update(self, user_id: int, streak_type: str, at: datetime | None = None) -> StreakUpdate:
        validate_streak_type(streak_type)
        today = activity_date(at or datetime.now(timezone.utc), self.zone)
        streak = await self.repos.streaks.get_or_create(user_id, streak_type)
        last = streak.last_activity_date

        # Same day, or an activity dated before the stored one: nothing to apply.
        if last is not None and today <= last:
            return StreakUpdate(
                user_id=user_id,
                streak_type=streak_type,
                current_streak=streak.current_streak,
                longest_streak=streak.longest_streak,
                continued=False,
                broken=False,
                changed=False,
            )

        previous: int | None = None
        if last is None:
            streak.current_streak = 1
            continued, broken = True, False
        elif today == last + timedelta(days=1):
            streak.current_streak += 1
            continued, broken = True, False
        else:
            previous = streak.current_streak
            streak.current_streak = 1
            continued, broken = False, True

        streak.longest_streak = max(streak.longest_streak, streak.current_streak)
        streak.last_activity_date = today
        await self.repos.streaks.save(streak)

        result = StreakUpdate(
            user_id=user_id,
            streak_type=streak_type,
            current_streak=streak.current_streak,
            longest_streak=streak.longest_streak,
            continued=continued,
            broken=broken,
            previous_streak=previous,
        )
        await self._log(result)
        return result

    async def _log(self, result: StreakUpdate) -> None:
        data = {"streak_type": result.streak_type, "current_streak": result.current_streak}
        if result.current_streak == 1:
            await self.repos.activity.log(result.user_id, "streak_started", data)
        if result.milestone:
            await self.repos.activity.log(result.user_id, "streak_milestone", data)
            logger.info(
                "User %s reached a %d-day %s streak",
                result.user_id,
                result.current_streak,
                result.streak_type,
            )
        if result.broken and (result.previous_streak or 0) >= BROKEN_LOG_MIN_STREAK:
            await self.repos.activity.log(
                result.user_id,
                "streak_broken",
                {**data, "previous_streak": result.previous_streak},
            )

    async def get_all(self, user_id: int) -> list[dict[str, Any]]:
        """Every streak type for the user, zeros where no row exists yet."""
        rows = {s.streak_type: s for s in await self.repos.streaks.list_for_user(user_id)}
        items = []
        for streak_type in STREAK_TYPES:
            row = rows.get(streak_type)
            items.append(
                {
                    "streak_type": streak_type,
                    "current_streak": row.current_streak if row else 0,
                    "longest_streak": row.longest_streak if row else 0,
                    "last_activity_date": row.last_activity_date.isoformat() if row and row.last_activity_date else None,
                }
            )
        return items
