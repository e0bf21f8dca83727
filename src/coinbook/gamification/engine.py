"""Achievement engine.

For a user and a definition, computes ``{percentage, tier, progress}`` and
reconciles it with the stored user_achievement row:

- tiers never downgrade and ``points_awarded`` never decreases; a lower
  computed tier is kept as a divergence record for audit, nothing else;
- the first earn of a tiered achievement backfills one notification per tier
  from bronze up to the reached tier;
- definitions with an unearned prerequisite are skipped without creating a row;
- a failure on one definition is logged and the rest still run.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from coinbook.db.models import UserAchievement
from coinbook.gamification.definitions import AchievementDefinition, DefinitionStore, order_by_prerequisite
from coinbook.gamification.notifications import AwardResult, NotificationSink, NullSink, TierTransition
from coinbook.gamification.requirements import (
    DynamicCollectionRequirement,
    EngagementRequirement,
    StaticCollectionRequirement,
)
from coinbook.gamification.stats import UNRANKED_POSITION, UserStats
from coinbook.gamification.tiers import (
    COMPLETE,
    backfill_path,
    percentage,
    proportional_points,
    tier_for,
    tier_rank,
)
from coinbook.repositories.unit_of_work import Repositories
from coinbook.telemetry import Telemetry

logger = structlog.get_logger()

# Engagement metric -> UserStats attribute.
METRIC_FIELDS: dict[str, str] = {
    "rank_count": "total_rankings",
    "search_count": "total_searches",
    "page_view_count": "total_page_views",
    "product_view_count": "product_views",
    "unique_product_view_count": "unique_product_views",
    "profile_view_count": "profile_views",
    "unique_profile_view_count": "unique_profile_views",
    "streak_days": "current_streak",
    "daily_login_streak": "login_streak",
}


class ProductSetResolver(Protocol):
    async def resolve(self, requirement: DynamicCollectionRequirement) -> set[str]: ...


class Evaluation:
    """Result of evaluating one definition for one user; never persisted by itself."""

    __slots__ = ("achievement_id", "percentage", "tier", "progress")

    def __init__(self, achievement_id: int, pct: int, tier: str | None, progress: dict[str, Any]) -> None:
        self.achievement_id = achievement_id
        self.percentage = pct
        self.tier = tier
        self.progress = progress

    def __repr__(self) -> str:
        return f"Evaluation(achievement_id={self.achievement_id}, percentage={self.percentage}, tier={self.tier!r})"


StatsLoader = Callable[[int], Awaitable[UserStats]]


class AchievementEngine:
    """Bound to one unit of work; build a new engine per transaction."""

    def __init__(
        self,
        repos: Repositories,
        definitions: DefinitionStore,
        resolver: ProductSetResolver,
        *,
        telemetry: Telemetry,
        sink: NotificationSink | None = None,
        stats_loader: StatsLoader | None = None,
    ) -> None:
        self.repos = repos
        self.definitions = definitions
        self.resolver = resolver
        self.telemetry = telemetry
        self.sink = sink or NullSink()
        self.stats_loader = stats_loader

    async def _stats(self, user_id: int, stats: UserStats | None) -> UserStats:
        if stats is not None:
            return stats
        if self.stats_loader is None:
            msg = "AchievementEngine needs user stats or a stats_loader"
            raise RuntimeError(msg)
        return await self.stats_loader(user_id)

    # ── Evaluation ──

    async def evaluate_one(
        self,
        user_id: int,
        definition: AchievementDefinition,
        stats: UserStats | None = None,
    ) -> Evaluation:
        requirement = definition.requirement

        if isinstance(requirement, EngagementRequirement):
            pct, progress = self._evaluate_engagement(requirement, await self._stats(user_id, stats))
        else:
            if isinstance(requirement, StaticCollectionRequirement):
                product_ids = set(requirement.product_ids)
            else:
                product_ids = await self.resolver.resolve(requirement)
            ranked = await self.repos.rankings.count_ranked_in(user_id, product_ids)
            pct = percentage(ranked, len(product_ids))
            progress = {
                "current": ranked,
                "required": len(product_ids),
                "total_ranked": ranked,
                "total_available": len(product_ids),
            }

        tier = tier_for(pct, definition.thresholds, has_tiers=definition.has_tiers)
        progress["percentage"] = pct
        return Evaluation(definition.id, pct, tier, progress)

    @staticmethod
    def _evaluate_engagement(requirement: EngagementRequirement, stats: UserStats) -> tuple[int, dict[str, Any]]:
        metric = requirement.metric

        if metric == "leaderboard_position":
            position = stats.leaderboard_position or UNRANKED_POSITION
            if 0 < position <= requirement.target:
                pct = 100
            else:
                pct = min(99, percentage(requirement.target, position))
            return pct, {"metric": metric, "current": position, "required": requirement.target}

        if metric == "join_before":
            joined = stats.joined_at.date() if stats.joined_at else None
            qualifies = joined is not None and requirement.cutoff is not None and joined <= requirement.cutoff
            return (100 if qualifies else 0), {
                "metric": metric,
                "current": joined.isoformat() if joined else None,
                "required": requirement.cutoff.isoformat() if requirement.cutoff else None,
            }

        current = int(getattr(stats, METRIC_FIELDS[metric]))
        return percentage(current, requirement.target), {
            "metric": metric,
            "current": current,
            "required": requirement.target,
        }

    async def evaluate_all(self, user_id: int, stats: UserStats | None = None) -> list[AwardResult]:
        """Evaluate and award every active definition; returns the state transitions."""
        stats = await self._stats(user_id, stats)
        earned = await self.repos.user_achievements.earned_ids(user_id)
        results: list[AwardResult] = []

        for definition in order_by_prerequisite(await self.definitions.active()):
            if definition.prerequisite_achievement_id and definition.prerequisite_achievement_id not in earned:
                continue
            try:
                evaluation = await self.evaluate_one(user_id, definition, stats)
                result = await self.award(user_id, definition, evaluation, prerequisite_checked=True)
            except Exception as exc:
                logger.error(
                    "achievement_evaluation_failed",
                    user_id=user_id,
                    code=definition.code,
                    error=str(exc),
                )
                self.telemetry.capture_exception(exc, tags={"service": "achievement-engine"}, extra={
                    "user_id": user_id,
                    "code": definition.code,
                })
                continue
            if result is not None:
                results.append(result)
                earned.add(definition.id)

        return results

    # ── Award ──

    def _points_for(self, definition: AchievementDefinition, evaluation: Evaluation) -> int:
        if not definition.has_tiers:
            return definition.points if evaluation.tier == COMPLETE else 0
        return proportional_points(evaluation.percentage, definition.points)

    async def award(
        self,
        user_id: int,
        definition: AchievementDefinition,
        evaluation: Evaluation,
        *,
        prerequisite_checked: bool = False,
    ) -> AwardResult | None:
        """Persist an evaluation; returns the transition or None when nothing user-visible changed."""
        prerequisite = definition.prerequisite_achievement_id
        if prerequisite and not prerequisite_checked:
            if await self.repos.user_achievements.get(user_id, prerequisite) is None:
                return None

        row = await self.repos.user_achievements.get(user_id, definition.id)
        if row is None:
            if evaluation.tier is None:
                return None
            result = await self._first_earn(user_id, definition, evaluation, evaluation.tier)
        else:
            result = await self._reconcile(user_id, definition, evaluation, row)

        if result is not None:
            await self._after_award(user_id, definition, result)
        return result

    async def _first_earn(
        self,
        user_id: int,
        definition: AchievementDefinition,
        evaluation: Evaluation,
        tier: str,
    ) -> AwardResult:
        notifications: list[TierTransition] = []

        if definition.has_tiers:
            previous_tier: str | None = None
            previous_points = 0
            for step, step_tier in enumerate(backfill_path(tier)):
                threshold = definition.thresholds[step_tier]
                step_points = proportional_points(threshold, definition.points)
                notifications.append(
                    self._transition(
                        "new" if step == 0 else "tier_upgrade",
                        user_id,
                        definition,
                        previous_tier,
                        step_tier,
                        step_points,
                        step_points - previous_points,
                        threshold,
                    )
                )
                previous_tier, previous_points = step_tier, step_points
            points = max(self._points_for(definition, evaluation), previous_points)
        else:
            points = self._points_for(definition, evaluation)
            notifications.append(
                self._transition("new", user_id, definition, None, tier, points, points, evaluation.percentage)
            )

        await self.repos.user_achievements.create(
            user_id,
            definition.id,
            tier=tier,
            percentage=evaluation.percentage,
            points=points,
            progress=evaluation.progress,
        )
        logger.info("achievement_earned", user_id=user_id, code=definition.code, tier=tier, points=points)
        return AwardResult(
            type="new",
            achievement_id=definition.id,
            code=definition.code,
            collection_type=definition.kind,
            previous_tier=None,
            new_tier=tier,
            points_awarded=points,
            points_gained=points,
            notifications=notifications,
        )

    async def _reconcile(
        self,
        user_id: int,
        definition: AchievementDefinition,
        evaluation: Evaluation,
        row: UserAchievement,
    ) -> AwardResult | None:
        stored_rank = tier_rank(row.current_tier)
        computed_rank = tier_rank(evaluation.tier)

        if computed_rank < stored_rank:
            self._record_divergence(user_id, definition, row, evaluation)
            return None

        points = max(row.points_awarded, self._points_for(definition, evaluation))

        new_tier = evaluation.tier
        if new_tier is None or computed_rank == stored_rank:
            if evaluation.percentage > row.percentage_complete or points > row.points_awarded:
                row.percentage_complete = max(row.percentage_complete, evaluation.percentage)
                row.points_awarded = points
                row.progress = evaluation.progress
                await self.repos.user_achievements.save(row)
            return None

        previous_tier = row.current_tier
        gained = points - row.points_awarded
        row.current_tier = new_tier
        row.percentage_complete = max(row.percentage_complete, evaluation.percentage)
        row.points_awarded = points
        row.progress = evaluation.progress
        row.earned_at = datetime.now(timezone.utc)
        await self.repos.user_achievements.save(row)

        logger.info(
            "achievement_tier_upgraded",
            user_id=user_id,
            code=definition.code,
            previous_tier=previous_tier,
            new_tier=new_tier,
        )
        return AwardResult(
            type="tier_upgrade",
            achievement_id=definition.id,
            code=definition.code,
            collection_type=definition.kind,
            previous_tier=previous_tier,
            new_tier=new_tier,
            points_awarded=points,
            points_gained=gained,
            notifications=[
                self._transition(
                    "tier_upgrade",
                    user_id,
                    definition,
                    previous_tier,
                    new_tier,
                    points,
                    gained,
                    evaluation.percentage,
                )
            ],
        )

    @staticmethod
    def _transition(
        kind: str,
        user_id: int,
        definition: AchievementDefinition,
        previous_tier: str | None,
        new_tier: str,
        points: int,
        gained: int,
        pct: int,
    ) -> TierTransition:
        return TierTransition(
            type=kind,
            user_id=user_id,
            achievement_id=definition.id,
            code=definition.code,
            name=definition.name,
            icon=definition.icon,
            collection_type=definition.kind,
            previous_tier=previous_tier,
            new_tier=new_tier,
            points_awarded=points,
            points_gained=gained,
            percentage=pct,
        )

    async def _after_award(self, user_id: int, definition: AchievementDefinition, result: AwardResult) -> None:
        await self.repos.activity.log(
            user_id,
            "earn_badge",
            {
                "code": definition.code,
                "name": definition.name,
                "icon": definition.icon,
                "tier": result.new_tier,
                "points": result.points_awarded,
                "type": result.type,
            },
        )
        for transition in result.notifications:
            try:
                await self.sink.achievement_transition(user_id, transition)
            except Exception:
                logger.warning("achievement_notification_failed", user_id=user_id, code=definition.code, exc_info=True)

    def _record_divergence(
        self,
        user_id: int,
        definition: AchievementDefinition,
        row: UserAchievement,
        evaluation: Evaluation,
    ) -> dict[str, Any]:
        divergence = {
            "user_id": user_id,
            "code": definition.code,
            "stored_tier": row.current_tier,
            "computed_tier": evaluation.tier,
            "stored_percentage": row.percentage_complete,
            "computed_percentage": evaluation.percentage,
        }
        self.telemetry.capture_message("achievement_tier_divergence", tags={"code": definition.code}, extra=divergence)
        return divergence

    # ── Audit (coin recalculation) ──

    async def audit(
        self,
        user_id: int,
        stats: UserStats | None = None,
        *,
        coin_type: str | None = None,
        reason: str | None = None,
    ) -> list[dict[str, Any]]:
        """Re-evaluate without writing awards; divergences are logged for review.

        ``coin_type`` narrows the sweep to one collection type; ``all`` or None
        covers every active definition.
        """
        stats = await self._stats(user_id, stats)
        rows = {ua.achievement_id: ua for ua in await self.repos.user_achievements.list_for_user(user_id)}
        divergences: list[dict[str, Any]] = []

        for definition in await self.definitions.active():
            if coin_type not in (None, "all") and definition.kind != coin_type:
                continue
            row = rows.get(definition.id)
            if row is None:
                continue
            try:
                evaluation = await self.evaluate_one(user_id, definition, stats)
            except Exception as exc:
                logger.error("achievement_audit_failed", user_id=user_id, code=definition.code, error=str(exc))
                self.telemetry.capture_exception(exc, tags={"service": "coin-recalculation"})
                continue
            if tier_rank(evaluation.tier) < tier_rank(row.current_tier):
                divergence = self._record_divergence(user_id, definition, row, evaluation)
                divergence["reason"] = reason
                await self.repos.activity.log(user_id, "coin_divergence", divergence)
                divergences.append(divergence)

        return divergences

    # ── Display ──

    async def get_with_progress(self, user_id: int, stats: UserStats | None = None) -> list[dict[str, Any]]:
        """Active definitions with the user's progress; hidden ones only once earned."""
        stats = await self._stats(user_id, stats)
        rows = {ua.achievement_id: ua for ua in await self.repos.user_achievements.list_for_user(user_id)}
        items: list[dict[str, Any]] = []

        for definition in await self.definitions.active():
            row = rows.get(definition.id)
            if definition.hidden and row is None:
                continue
            locked = bool(definition.prerequisite_achievement_id) and definition.prerequisite_achievement_id not in rows
            try:
                evaluation: Evaluation | None = await self.evaluate_one(user_id, definition, stats)
            except Exception as exc:
                logger.warning("achievement_progress_failed", user_id=user_id, code=definition.code, error=str(exc))
                evaluation = None
            items.append(self._progress_view(definition, row, evaluation, locked))

        return items

    @staticmethod
    def _progress_view(
        definition: AchievementDefinition,
        row: UserAchievement | None,
        evaluation: Evaluation | None,
        locked: bool,
    ) -> dict[str, Any]:
        live_pct = evaluation.percentage if evaluation else 0
        pct = max(live_pct, row.percentage_complete if row else 0)
        progress = dict(evaluation.progress) if evaluation else dict(row.progress if row else {})
        progress["percentage"] = pct
        return {
            "id": definition.id,
            "code": definition.code,
            "name": definition.name,
            "description": definition.description,
            "icon": definition.icon,
            "collection_type": definition.kind,
            "category": definition.category,
            "has_tiers": definition.has_tiers,
            "tier_thresholds": definition.thresholds if definition.has_tiers else None,
            "points": definition.points,
            "is_hidden": definition.hidden,
            "locked": locked,
            "earned": row is not None,
            "earned_at": row.earned_at.isoformat() if row else None,
            "current_tier": row.current_tier if row else None,
            "percentage_complete": pct,
            "points_awarded": row.points_awarded if row else 0,
            "progress": progress,
        }
