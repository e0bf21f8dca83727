"""Next-milestone selection and short progress insights."""

from __future__ import annotations

import math
from typing import Any

from coinbook.gamification.stats import UNRANKED_POSITION, UserStats
from coinbook.gamification.tiers import COMPLETE, DEFAULT_TIER_THRESHOLDS, next_tier, tier_for


def _next_target(item: dict[str, Any]) -> tuple[str, int] | None:
    """(tier, threshold) the item is working towards, or None when maxed out."""
    pct = item["percentage_complete"]
    if not item["has_tiers"]:
        if item["current_tier"] == COMPLETE or pct >= 100:
            return None
        return COMPLETE, 100
    thresholds = item["tier_thresholds"] or DEFAULT_TIER_THRESHOLDS
    reached = tier_for(pct, thresholds, has_tiers=True)
    upcoming = next_tier(reached)
    if upcoming is None:
        return None
    return upcoming, thresholds[upcoming]


def _remaining_units(item: dict[str, Any], target_pct: int) -> int | None:
    """Units (rankings, views, days...) still needed to reach ``target_pct``."""
    progress = item.get("progress") or {}
    current = progress.get("current")
    required = progress.get("required")
    if not isinstance(current, int) or not isinstance(required, int) or required <= 0:
        return None
    return max(0, math.ceil(target_pct * required / 100) - current)


def _label(tier: str, name: str) -> str:
    return name if tier == COMPLETE else f"{tier.title()}: {name}"


class ProgressTracker:
    def next_milestone(self, achievements: list[dict[str, Any]]) -> dict[str, Any] | None:
        """Closest unlocked target; ties go to the higher point value.

        ``achievements`` is the engine's ``get_with_progress`` output.
        """
        candidates = []
        for item in achievements:
            if item.get("locked"):
                continue
            target = _next_target(item)
            if target is None:
                continue
            tier, threshold = target
            gap = threshold - item["percentage_complete"]
            # Partially-earned first, then by closeness, then by points.
            started = item["percentage_complete"] > 0
            candidates.append(((not started, gap, -item["points"], item["code"]), item, tier, threshold))

        if not candidates:
            return None
        _, item, tier, threshold = min(candidates, key=lambda c: c[0])
        return {
            "code": item["code"],
            "name": item["name"],
            "icon": item["icon"],
            "label": _label(tier, item["name"]),
            "tier": tier,
            "target": threshold,
            "progress_pct": item["percentage_complete"],
            "remaining": _remaining_units(item, threshold),
        }

    def insights(self, stats: UserStats, milestone: dict[str, Any] | None = None) -> list[dict[str, str]]:
        hints: list[dict[str, str]] = []

        if milestone is not None and milestone.get("remaining"):
            remaining = milestone["remaining"]
            hints.append(
                {
                    "type": "next_milestone",
                    "message": f"You're {remaining} away from {milestone['label']}",
                }
            )

        if stats.current_streak >= 2:
            hints.append({"type": "streak_active", "message": f"You're on a {stats.current_streak}-day ranking streak"})
        elif stats.current_streak == 0 and stats.total_rankings > 0:
            hints.append({"type": "streak_start", "message": "Rank a product today to start a new streak"})

        if stats.leaderboard_position != UNRANKED_POSITION:
            hints.append({"type": "leaderboard", "message": f"You're #{stats.leaderboard_position} on the leaderboard"})

        left = stats.total_rankable - stats.unique_products
        if stats.total_rankable and left > 0:
            noun = "product" if left == 1 else "products"
            hints.append({"type": "unranked_products", "message": f"{left} {noun} left to rank"})
        elif stats.total_rankable and left <= 0:
            hints.append({"type": "all_ranked", "message": "You've ranked every product available to you"})

        if stats.total_rankings == 0:
            hints.append({"type": "first_ranking", "message": "Rank your first product to start earning coins"})

        return hints
