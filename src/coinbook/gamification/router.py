"""Gamification read views and activity tracking endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from coinbook.auth.dependencies import get_current_user, get_optional_user, get_services
from coinbook.container import Services
from coinbook.db.models import User
from coinbook.gamification.leaderboard_service import DEFAULT_LIMIT, MAX_LIMIT
from coinbook.gamification.schemas import StreakUpdateRequest, TrackViewRequest

router = APIRouter(prefix="/api/gamification", tags=["Gamification"])


@router.get("/achievements")
async def achievements(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    items = await services.gamification.achievements(user.id)
    return {
        "achievements": items,
        "earned_count": sum(1 for i in items if i["earned"]),
        "total_count": len(items),
    }


@router.get("/progress")
async def progress(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.gamification.progress(user.id)


@router.get("/streaks")
async def streaks(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {"streaks": await services.gamification.streaks(user.id)}


@router.post("/streaks/update")
async def update_streak(
    body: StreakUpdateRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Record today's activity for a streak and evaluate achievements."""
    outcome = await services.gamification.process_activity(user.id, body.streak_type)
    if outcome.streak is not None and outcome.streak.changed:
        await services.gateway.streak_updated(outcome.streak)
    return {
        "streak": outcome.streak.to_dict() if outcome.streak else None,
        "awards": [a.to_dict() for a in outcome.awards],
    }


@router.get("/leaderboard")
async def leaderboard(
    period: str = Query("all_time"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    compare_with: int | None = Query(None, alias="compareWith"),
    user: User | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Top users for a window; signed-in callers also get their own standing."""
    data: dict[str, Any] = {"period": period, "leaders": await services.leaderboard.top(limit, period)}
    if user is not None:
        data["position"] = await services.leaderboard.position(user.id, period)
        data["summary"] = await services.leaderboard.user_summary(user.id)
        if compare_with is not None:
            data["comparison"] = await services.leaderboard.compare(user.id, compare_with, period)
    return data


@router.get("/activity-feed")
async def activity_feed(
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {"activities": await services.gamification.activity_feed(limit)}


@router.get("/home-stats")
async def home_stats(
    user: User | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.gamification.home_stats(user.id if user else None)


@router.get("/hero-stats")
async def hero_stats(services: Services = Depends(get_services)) -> dict[str, Any]:
    return await services.gamification.hero_stats()


@router.post("/track-view", status_code=status.HTTP_202_ACCEPTED)
async def track_view(
    body: TrackViewRequest,
    user: User | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
) -> dict[str, str]:
    """Accept a view and record it after the response is sent."""
    services.tasks.spawn(
        "track_view",
        services.gamification.track_view(user.id if user else None, body.kind, body.identifier),
        kind=body.kind,
    )
    return {"status": "accepted"}
