"""Pydantic request models for admin endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class AchievementUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    icon: str | None = None
    category: str | None = None
    collection_type: str | None = None
    requirement: dict[str, Any] | None = None
    has_tiers: bool | None = None
    tier_thresholds: dict[str, int] | None = None
    points: int | None = Field(default=None, ge=0)
    is_hidden: bool | None = None
    is_active: bool | None = None
    prerequisite_achievement_id: int | None = None
    protein_categories: list[str] | None = None


class MetadataUpdate(BaseModel):
    animal_type: str | None = None
    animal_display: str | None = None
    animal_icon: str | None = None
    primary_flavor: str | None = None
    secondary_flavors: list[str] | None = None
    flavor_display: str | None = None
    flavor_icon: str | None = None
    force_rankable: bool | None = None
