"""Retroactive re-evaluation of one achievement across its candidate users.

Sweeps run on the task runner and are tracked by run id so an admin can poll
or cancel them. Cancellation is honoured at batch boundaries.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.registry import CacheRegistry
from coinbook.errors import NotFound
from coinbook.gamification.definitions import AchievementDefinition
from coinbook.gamification.requirements import is_activity_based, is_ranking_based
from coinbook.gamification.service import GamificationService
from coinbook.repositories.unit_of_work import unit_of_work
from coinbook.tasks import TaskRunner
from coinbook.telemetry import Telemetry

logger = structlog.get_logger()

MAX_TRACKED_RUNS = 50


@dataclass
class RecalculationRun:
    run_id: str
    achievement_id: int
    code: str
    status: str = "pending"  # pending | running | completed | cancelled | failed
    total: int = 0
    processed: int = 0
    new_awards: int = 0
    tier_upgrades: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    cancel_requested: bool = False

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "cancelled", "failed")

    def summary(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "new_awards": self.new_awards,
            "tier_upgrades": self.tier_upgrades,
            "errors": list(self.errors),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "achievement_id": self.achievement_id,
            "code": self.code,
            "status": self.status,
            **self.summary(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class AchievementRecalculator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: CacheRegistry,
        gamification: GamificationService,
        tasks: TaskRunner,
        telemetry: Telemetry,
        *,
        batch_size: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.caches = caches
        self.gamification = gamification
        self.tasks = tasks
        self.telemetry = telemetry
        self.batch_size = max(1, batch_size)
        self._runs: dict[str, RecalculationRun] = {}

    async def candidate_users(self, definition: AchievementDefinition) -> list[int]:
        """Users with rankings, users with activity, or everyone."""
        requirement = definition.requirement
        async with unit_of_work(self.session_factory) as repos:
            if is_ranking_based(requirement):
                return await repos.rankings.user_ids_with_rankings()
            if is_activity_based(requirement):
                return await repos.activity.user_ids_with_activity()
            return await repos.users.list_ids()

    def start(self, definition: AchievementDefinition) -> RecalculationRun:
        run = RecalculationRun(run_id=uuid.uuid4().hex, achievement_id=definition.id, code=definition.code)
        self._track(run)
        self.tasks.spawn("achievement_recalculation", self.run(run, definition), run_id=run.run_id)
        logger.info("recalculation_started", run_id=run.run_id, achievement_id=definition.id)
        return run

    def _track(self, run: RecalculationRun) -> None:
        self._runs[run.run_id] = run
        finished = [r for r in self._runs.values() if r.finished]
        for old in finished[: max(0, len(self._runs) - MAX_TRACKED_RUNS)]:
            del self._runs[old.run_id]

    def get(self, run_id: str) -> RecalculationRun:
        run = self._runs.get(run_id)
        if run is None:
            msg = f"Unknown recalculation run: {run_id}"
            raise NotFound(msg)
        return run

    def cancel(self, run_id: str) -> RecalculationRun:
        run = self.get(run_id)
        if not run.finished:
            run.cancel_requested = True
            logger.info("recalculation_cancel_requested", run_id=run_id)
        return run

    async def run(self, run: RecalculationRun, definition: AchievementDefinition) -> dict[str, Any]:
        run.status = "running"
        try:
            user_ids = await self.candidate_users(definition)
            run.total = len(user_ids)
            for start in range(0, len(user_ids), self.batch_size):
                if run.cancel_requested:
                    run.status = "cancelled"
                    break
                for user_id in user_ids[start : start + self.batch_size]:
                    await self._recalculate_user(run, definition, user_id)
                await asyncio.sleep(0)
            else:
                run.status = "completed"
        except Exception:
            run.status = "failed"
            raise
        finally:
            run.finished_at = datetime.now(timezone.utc)
            await self.caches.on_recalculation_complete()
            logger.info(
                "recalculation_finished",
                run_id=run.run_id,
                achievement_id=definition.id,
                status=run.status,
                processed=run.processed,
                total=run.total,
                new_awards=run.new_awards,
                tier_upgrades=run.tier_upgrades,
                errors=len(run.errors),
            )
        return run.summary()

    async def _recalculate_user(self, run: RecalculationRun, definition: AchievementDefinition, user_id: int) -> None:
        try:
            result = await self.gamification.recalculate_definition(user_id, definition)
        except Exception as exc:
            run.errors.append({"user_id": user_id, "error": str(exc)})
            self.telemetry.capture_exception(
                exc,
                tags={"task": "achievement_recalculation"},
                extra={"run_id": run.run_id, "user_id": user_id, "achievement_id": definition.id},
            )
            return
        finally:
            run.processed += 1
        if result is None:
            return
        if result.type == "new":
            run.new_awards += 1
        elif result.type == "tier_upgrade":
            run.tier_upgrades += 1

    async def recalculate(self, definition: AchievementDefinition) -> dict[str, Any]:
        """Run a sweep inline and return its summary."""
        run = RecalculationRun(run_id=uuid.uuid4().hex, achievement_id=definition.id, code=definition.code)
        self._track(run)
        return await self.run(run, definition)
