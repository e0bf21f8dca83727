"""Pydantic request models for gamification endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class TrackViewRequest(BaseModel):
    kind: Literal["product", "page", "profile"] = Field(alias="type")
    identifier: str | None = Field(default=None, max_length=200)

    model_config = {"populate_by_name": True}


class StreakUpdateRequest(BaseModel):
    streak_type: Literal["daily_rank", "login"] = "login"
