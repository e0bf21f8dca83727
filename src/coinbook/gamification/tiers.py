"""Tier ordering, threshold validation and proportional points."""

from __future__ import annotations

import math
from collections.abc import Mapping

from coinbook.errors import InvalidInput

TIER_ORDER: tuple[str, ...] = ("bronze", "silver", "gold", "platinum", "diamond")
COMPLETE = "complete"

DEFAULT_TIER_THRESHOLDS: dict[str, int] = {
    "bronze": 40,
    "silver": 60,
    "gold": 75,
    "platinum": 90,
    "diamond": 100,
}

TIER_RANK: dict[str | None, int] = {None: -1, **{t: i for i, t in enumerate(TIER_ORDER)}, COMPLETE: len(TIER_ORDER)}


def tier_rank(tier: str | None) -> int:
    """Position in bronze < silver < gold < platinum < diamond < complete; -1 for none."""
    return TIER_RANK.get(tier, -1)


def validate_thresholds(thresholds: Mapping[str, int] | None) -> dict[str, int]:
    """Return a complete threshold map or raise InvalidInput.

    Missing maps fall back to the defaults; supplied maps must name every tier
    with strictly increasing values in 1..100.
    """
    if not thresholds:
        return dict(DEFAULT_TIER_THRESHOLDS)

    unknown = set(thresholds) - set(TIER_ORDER)
    if unknown:
        msg = f"Unknown tiers in thresholds: {sorted(unknown)}"
        raise InvalidInput(msg)
    missing = [t for t in TIER_ORDER if t not in thresholds]
    if missing:
        msg = f"Tier thresholds missing: {missing}"
        raise InvalidInput(msg)

    values = [int(thresholds[t]) for t in TIER_ORDER]
    if any(v < 1 or v > 100 for v in values):
        msg = "Tier thresholds must be between 1 and 100"
        raise InvalidInput(msg)
    if any(b <= a for a, b in zip(values, values[1:])):
        msg = "Tier thresholds must be strictly increasing from bronze to diamond"
        raise InvalidInput(msg)
    return dict(zip(TIER_ORDER, values))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(current: int | float, required: int | float) -> int:
    """Whole-number percent, capped at 100."""
    if required <= 0:
        return 0
    return max(0, min(100, round_half_up(current * 100 / required)))


def tier_for(pct: int, thresholds: Mapping[str, int], *, has_tiers: bool) -> str | None:
    """Highest tier whose threshold is <= pct; non-tiered definitions are complete at 100."""
    if not has_tiers:
        return COMPLETE if pct >= 100 else None
    reached = None
    for tier in TIER_ORDER:
        if pct >= thresholds[tier]:
            reached = tier
    return reached


def proportional_points(pct: int, max_points: int) -> int:
    return round_half_up(pct * max_points / 100)


def backfill_path(tier: str) -> list[str]:
    """Tiers from bronze up to and including ``tier``."""
    if tier not in TIER_ORDER:
        return [tier]
    return list(TIER_ORDER[: TIER_ORDER.index(tier) + 1])


def next_tier(tier: str | None) -> str | None:
    if tier is None:
        return TIER_ORDER[0]
    if tier not in TIER_ORDER:
        return None
    idx = TIER_ORDER.index(tier)
    return TIER_ORDER[idx + 1] if idx + 1 < len(TIER_ORDER) else None
