"""Typed achievement requirements.

Definitions store their requirement as JSON; ``parse_requirement`` turns it
into one of three records the engine dispatches on:

- ``EngagementRequirement``: a counter (rankings, searches, views, streaks,
  leaderboard position, join date) compared with a target.
- ``StaticCollectionRequirement``: an explicit product list.
- ``DynamicCollectionRequirement``: a selector resolved against product
  metadata at evaluation time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Union

from coinbook.errors import InvalidInput

COLLECTION_TYPES = ("engagement", "static_collection", "dynamic_collection", "flavor_coin", "hidden")
COLLECTION_TYPE_ALIASES = {
    "engagement_collection": "engagement",
    "hidden_collection": "hidden",
    "custom_product_list": "static_collection",
}
# Collections broadcast collections:updated and are announced as coin:earned.
PRODUCT_COLLECTION_TYPES = frozenset({"static_collection", "dynamic_collection", "flavor_coin"})

RANKING_METRICS = frozenset({"rank_count"})
ACTIVITY_METRICS = frozenset(
    {
        "search_count",
        "page_view_count",
        "product_view_count",
        "unique_product_view_count",
        "profile_view_count",
        "unique_profile_view_count",
        "streak_days",
        "daily_login_streak",
    }
)
ENGAGEMENT_TYPES = RANKING_METRICS | ACTIVITY_METRICS | {"leaderboard_position", "join_before"}

DYNAMIC_SELECTORS = {
    "complete_collection": "all",
    "animal_collection": "animal",
    "brand_collection": "brand",
    "flavor_collection": "flavor",
}


@dataclass(frozen=True)
class EngagementRequirement:
    metric: str
    target: int
    cutoff: date | None = None


@dataclass(frozen=True)
class StaticCollectionRequirement:
    product_ids: tuple[str, ...]


@dataclass(frozen=True)
class DynamicCollectionRequirement:
    selector: str  # all | animal | brand | flavor
    values: tuple[str, ...] = ()


Requirement = Union[EngagementRequirement, StaticCollectionRequirement, DynamicCollectionRequirement]


def normalize_collection_type(collection_type: str) -> str:
    ctype = COLLECTION_TYPE_ALIASES.get(collection_type, collection_type)
    if ctype not in COLLECTION_TYPES:
        msg = f"Unknown collection type: {collection_type}"
        raise InvalidInput(msg)
    return ctype


def _as_date(value: Any) -> date:  # noqa: ANN401
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError as exc:
        msg = f"join_before requires an ISO date, got {value!r}"
        raise InvalidInput(msg) from exc


def _engagement(raw: dict[str, Any]) -> EngagementRequirement:
    metric = raw["type"]
    if metric == "join_before":
        return EngagementRequirement(metric=metric, target=1, cutoff=_as_date(raw.get("value") or raw.get("date")))
    target = raw.get("value", raw.get("days"))
    try:
        target_int = int(target)
    except (TypeError, ValueError) as exc:
        msg = f"{metric} requires a numeric value"
        raise InvalidInput(msg) from exc
    if target_int <= 0:
        msg = f"{metric} requires a positive value"
        raise InvalidInput(msg)
    return EngagementRequirement(metric=metric, target=target_int)


def _product_ids(raw: dict[str, Any]) -> tuple[str, ...] | None:
    for key in ("productIds", "product_ids", "products"):
        if key in raw:
            ids = raw[key] or []
            return tuple(dict.fromkeys(str(p) for p in ids))
    for key in ("productId", "product_id"):
        if raw.get(key):
            return (str(raw[key]),)
    return None


def _strings(value: Any) -> tuple[str, ...]:  # noqa: ANN401
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _dynamic(raw: dict[str, Any], protein_categories: list[str] | None) -> DynamicCollectionRequirement:
    selector = DYNAMIC_SELECTORS.get(raw.get("type", ""))
    if selector is None:
        selector = "animal" if ("categories" in raw or protein_categories) else "all"

    if selector == "all":
        return DynamicCollectionRequirement(selector="all")
    if selector == "animal":
        values = _strings(raw.get("categories") or raw.get("animals") or protein_categories)
    elif selector == "brand":
        values = _strings(raw.get("vendors") or raw.get("brands"))
    else:
        values = _strings(raw.get("flavors"))
    if not values:
        msg = f"{raw.get('type', 'dynamic collection')} requires at least one selector value"
        raise InvalidInput(msg)
    return DynamicCollectionRequirement(selector=selector, values=values)


def parse_requirement(
    raw: dict[str, Any] | None,
    collection_type: str,
    protein_categories: list[str] | None = None,
) -> Requirement:
    ctype = normalize_collection_type(collection_type)
    raw = raw or {}
    rtype = raw.get("type")

    if rtype in ENGAGEMENT_TYPES:
        return _engagement(raw)
    if ctype == "engagement":
        msg = f"Unknown engagement requirement type: {rtype!r}"
        raise InvalidInput(msg)

    ids = _product_ids(raw)
    if ids is not None:
        return StaticCollectionRequirement(product_ids=ids)

    if rtype in DYNAMIC_SELECTORS or "categories" in raw or ctype == "dynamic_collection":
        return _dynamic(raw, protein_categories)

    msg = f"Cannot interpret requirement for {ctype}: {raw!r}"
    raise InvalidInput(msg)


def is_ranking_based(requirement: Requirement) -> bool:
    if isinstance(requirement, EngagementRequirement):
        return requirement.metric in RANKING_METRICS
    return True


def is_activity_based(requirement: Requirement) -> bool:
    return isinstance(requirement, EngagementRequirement) and requirement.metric in ACTIVITY_METRICS
