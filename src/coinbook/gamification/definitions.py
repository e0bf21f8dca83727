"""Achievement definitions as immutable values, cached as a singleton list."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from functools import cached_property
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.base import SINGLETON
from coinbook.cache.registry import CacheRegistry
from coinbook.db.models import Achievement
from coinbook.gamification.requirements import (
    Requirement,
    normalize_collection_type,
    parse_requirement,
)
from coinbook.gamification.tiers import validate_thresholds
from coinbook.repositories.unit_of_work import unit_of_work


@dataclass(frozen=True)
class AchievementDefinition:
    id: int
    code: str
    name: str
    description: str
    icon: str | None
    collection_type: str
    requirement_data: dict[str, Any]
    has_tiers: bool
    points: int
    category: str | None = None
    raw_thresholds: dict[str, int] | None = None
    is_hidden: bool = False
    is_active: bool = True
    prerequisite_achievement_id: int | None = None
    protein_categories: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Achievement) -> AchievementDefinition:
        return cls(
            id=row.id,
            code=row.code,
            name=row.name,
            description=row.description or "",
            icon=row.icon,
            collection_type=row.collection_type,
            requirement_data=dict(row.requirement or {}),
            has_tiers=bool(row.has_tiers),
            points=int(row.points or 0),
            category=row.category,
            raw_thresholds=dict(row.tier_thresholds) if row.tier_thresholds else None,
            is_hidden=bool(row.is_hidden),
            is_active=bool(row.is_active),
            prerequisite_achievement_id=row.prerequisite_achievement_id,
            protein_categories=list(row.protein_categories or []),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AchievementDefinition:
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def kind(self) -> str:
        return normalize_collection_type(self.collection_type)

    @property
    def hidden(self) -> bool:
        return self.is_hidden or self.kind == "hidden"

    @cached_property
    def requirement(self) -> Requirement:
        return parse_requirement(self.requirement_data, self.collection_type, self.protein_categories)

    @cached_property
    def thresholds(self) -> dict[str, int]:
        return validate_thresholds(self.raw_thresholds)


def order_by_prerequisite(definitions: Iterable[AchievementDefinition]) -> list[AchievementDefinition]:
    """Prerequisites first, otherwise in the given order; cycles are broken arbitrarily."""
    defs = list(definitions)
    by_id = {d.id: d for d in defs}
    placed: set[int] = set()
    ordered: list[AchievementDefinition] = []

    def visit(definition: AchievementDefinition, trail: set[int]) -> None:
        if definition.id in placed or definition.id in trail:
            return
        trail.add(definition.id)
        prerequisite = by_id.get(definition.prerequisite_achievement_id or -1)
        if prerequisite is not None:
            visit(prerequisite, trail)
        placed.add(definition.id)
        ordered.append(definition)

    for definition in defs:
        visit(definition, set())
    return ordered


class DefinitionStore:
    """Reads definitions through the achievements cache (1 h, invalidated on admin edits)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], caches: CacheRegistry) -> None:
        self.session_factory = session_factory
        self.caches = caches

    async def _load(self) -> list[dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            rows = await repos.achievements.list_all(active_only=False)
        return [AchievementDefinition.from_row(r).to_dict() for r in rows]

    async def all(self) -> list[AchievementDefinition]:
        data = await self.caches.achievements.get_or_load(SINGLETON, self._load)
        return [AchievementDefinition.from_dict(d) for d in data]

    async def active(self) -> list[AchievementDefinition]:
        return [d for d in await self.all() if d.is_active]

    async def get(self, achievement_id: int) -> AchievementDefinition | None:
        for definition in await self.all():
            if definition.id == achievement_id:
                return definition
        return None
