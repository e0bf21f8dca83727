"""Pydantic request/response models for ranking endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from coinbook.repositories.rankings import DEFAULT_LIST


class RankingItem(BaseModel):
    product_data: dict[str, Any]
    rank: int = Field(ge=1)

    @field_validator("product_data")
    @classmethod
    def _needs_id(cls, value: dict[str, Any]) -> dict[str, Any]:
        if value.get("id") in (None, ""):
            msg = "product_data.id is required"
            raise ValueError(msg)
        return value

    @property
    def product_id(self) -> str:
        return str(self.product_data["id"])


class SaveRankingsRequest(BaseModel):
    ranking_list_id: str = Field(default=DEFAULT_LIST, alias="list", min_length=1, max_length=64)
    rankings: list[RankingItem]

    model_config = {"populate_by_name": True}


class SaveRankingsResponse(BaseModel):
    success: bool = True
    ranking_list_id: str = Field(alias="list")
    count: int


class RankingOperationRequest(BaseModel):
    op_id: str = Field(min_length=1, max_length=128)
    product_data: dict[str, Any]
    rank: int = Field(ge=1)
    ranking_list_id: str = Field(default=DEFAULT_LIST, alias="list", min_length=1, max_length=64)

    model_config = {"populate_by_name": True}


class RankingOperationResponse(BaseModel):
    op_id: str
    status: str
    applied: bool


class RankingEntry(BaseModel):
    product_id: str
    rank: int
    product_data: dict[str, Any]
    created_at: str
    updated_at: str


class RankingListResponse(BaseModel):
    ranking_list_id: str = Field(alias="list")
    rankings: list[RankingEntry]
    count: int


class ClearRankingsResponse(BaseModel):
    success: bool = True
    ranking_list_id: str = Field(alias="list")
    removed: int
