"""Ranking API endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from coinbook.auth.dependencies import get_current_user, get_services
from coinbook.container import Services
from coinbook.db.models import User
from coinbook.errors import InvalidInput
from coinbook.rankings.schemas import (
    ClearRankingsResponse,
    RankingListResponse,
    RankingOperationRequest,
    RankingOperationResponse,
    SaveRankingsRequest,
    SaveRankingsResponse,
)
from coinbook.repositories.rankings import DEFAULT_LIST, RankingInput

router = APIRouter(prefix="/api/rankings", tags=["Rankings"])


@router.post("/products", response_model=SaveRankingsResponse)
async def save_rankings(
    body: SaveRankingsRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Replace one ranking list; achievements and streaks update afterwards."""
    rankings = [RankingInput(product_id=r.product_id, ranking=r.rank, product_data=r.product_data) for r in body.rankings]
    count = await services.rankings.save_rankings(user, body.ranking_list_id, rankings)
    return {"success": True, "list": body.ranking_list_id, "count": count}


@router.get("/products", response_model=RankingListResponse)
async def list_rankings(
    list_id: str = Query(DEFAULT_LIST, alias="list"),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    rankings = await services.rankings.list_rankings(user, list_id)
    return {"list": list_id, "rankings": rankings, "count": len(rankings)}


@router.delete("/products/clear", response_model=ClearRankingsResponse)
async def clear_rankings(
    list_id: str = Query(DEFAULT_LIST, alias="list"),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    removed = await services.rankings.clear(user, list_id)
    return {"success": True, "list": list_id, "removed": removed}


@router.post("/products/operation", response_model=RankingOperationResponse)
async def apply_operation(
    body: RankingOperationRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Apply a single ranking; replays of the same ``op_id`` are no-ops."""
    product_id = body.product_data.get("id")
    if product_id in (None, ""):
        msg = "product_data.id is required"
        raise InvalidInput(msg)
    ranking = RankingInput(product_id=str(product_id), ranking=body.rank, product_data=body.product_data)
    return await services.rankings.apply_operation(user, body.op_id, ranking, body.ranking_list_id)
