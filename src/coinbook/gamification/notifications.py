"""Award records and the sink the engine reports them to.

The engine never talks to the realtime gateway; whoever builds the engine
injects a sink (the gateway, a Redis publisher, or nothing).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from coinbook.gamification.requirements import PRODUCT_COLLECTION_TYPES


@dataclass(frozen=True)
class TierTransition:
    """One user-visible step: a first earn or a tier upgrade."""

    type: str  # new | tier_upgrade
    user_id: int
    achievement_id: int
    code: str
    name: str
    icon: str | None
    collection_type: str
    previous_tier: str | None
    new_tier: str
    points_awarded: int
    points_gained: int
    percentage: int

    @property
    def is_collection(self) -> bool:
        return self.collection_type in PRODUCT_COLLECTION_TYPES

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "achievement": {
                "id": self.achievement_id,
                "code": self.code,
                "name": self.name,
                "icon": self.icon,
                "collection_type": self.collection_type,
            },
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "points_awarded": self.points_awarded,
            "points_gained": self.points_gained,
            "percentage": self.percentage,
        }


@dataclass
class AwardResult:
    """What ``award`` persisted; ``notifications`` holds the backfill path on a first earn."""

    type: str
    achievement_id: int
    code: str
    collection_type: str
    previous_tier: str | None
    new_tier: str
    points_awarded: int
    points_gained: int
    notifications: list[TierTransition] = field(default_factory=list)

    @property
    def is_collection(self) -> bool:
        return self.collection_type in PRODUCT_COLLECTION_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "achievement_id": self.achievement_id,
            "code": self.code,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "points_awarded": self.points_awarded,
            "points_gained": self.points_gained,
        }


class NotificationSink(Protocol):
    async def achievement_transition(self, user_id: int, transition: TierTransition) -> None: ...


class NullSink:
    async def achievement_transition(self, user_id: int, transition: TierTransition) -> None:
        return None
