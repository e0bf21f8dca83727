"""Employee-only endpoints: definition edits, metadata edits, recalculation sweeps."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, status

from coinbook.admin.schemas import AchievementUpdate, MetadataUpdate
from coinbook.auth.dependencies import get_employee_user, get_services
from coinbook.container import Services
from coinbook.db.models import User
from coinbook.errors import InvalidInput, NotFound
from coinbook.gamification.definitions import AchievementDefinition
from coinbook.gamification.requirements import parse_requirement
from coinbook.gamification.tiers import validate_thresholds
from coinbook.repositories.catalog import metadata_to_dict
from coinbook.repositories.unit_of_work import unit_of_work

logger = structlog.get_logger()

router = APIRouter(prefix="/api/admin", tags=["Admin"])


async def _definition(services: Services, achievement_id: int) -> AchievementDefinition:
    definition = await services.definitions.get(achievement_id)
    if definition is None:
        msg = f"Achievement {achievement_id} not found"
        raise NotFound(msg)
    return definition


@router.post("/achievements/{achievement_id}/recalculate", status_code=status.HTTP_202_ACCEPTED)
async def start_recalculation(
    achievement_id: int,
    admin: User = Depends(get_employee_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Start a sweep in the background; poll the returned run id."""
    definition = await _definition(services, achievement_id)
    run = services.recalculator.start(definition)
    logger.info("admin_recalculation_requested", admin_id=admin.id, achievement_id=achievement_id, run_id=run.run_id)
    return {"run_id": run.run_id, "status": run.status}


@router.get("/recalculations/{run_id}")
async def get_recalculation(
    run_id: str,
    _admin: User = Depends(get_employee_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.recalculator.get(run_id).to_dict()


@router.post("/recalculations/{run_id}/cancel")
async def cancel_recalculation(
    run_id: str,
    _admin: User = Depends(get_employee_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.recalculator.cancel(run_id).to_dict()


@router.patch("/achievements/{achievement_id}")
async def update_achievement(
    achievement_id: int,
    body: AchievementUpdate,
    admin: User = Depends(get_employee_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Edit a definition; the merged result must still parse."""
    changes = body.model_dump(exclude_unset=True)
    async with unit_of_work(services.session_factory) as repos:
        row = await repos.achievements.get(achievement_id)
        if row is None:
            msg = f"Achievement {achievement_id} not found"
            raise NotFound(msg)
        if changes.get("prerequisite_achievement_id") == achievement_id:
            msg = "An achievement cannot be its own prerequisite"
            raise InvalidInput(msg)

        parse_requirement(
            changes.get("requirement", row.requirement),
            changes.get("collection_type", row.collection_type),
            changes.get("protein_categories", row.protein_categories),
        )
        if "tier_thresholds" in changes:
            validate_thresholds(changes["tier_thresholds"])

        row = await repos.achievements.update(row, changes)
        definition = AchievementDefinition.from_row(row)

    await services.caches.on_definitions_changed()
    logger.info("achievement_updated", admin_id=admin.id, achievement_id=achievement_id, fields=sorted(changes))
    return definition.to_dict()


@router.patch("/products/{product_id}/metadata")
async def update_product_metadata(
    product_id: str,
    body: MetadataUpdate,
    admin: User = Depends(get_employee_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    changes = body.model_dump(exclude_unset=True)
    async with unit_of_work(services.session_factory) as repos:
        row, changed = await repos.metadata.upsert(product_id, changes)
        data = metadata_to_dict(row)
    if changed:
        await services.caches.on_metadata_changed()
    logger.info("product_metadata_updated", admin_id=admin.id, product_id=product_id, changed=changed)
    return {**data, "changed": changed}


@router.get("/queues")
async def queue_counts(
    _admin: User = Depends(get_employee_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {
        "queues": {
            services.webhook_queue.name: await services.webhook_queue.counts(),
            services.recalc_queue.name: await services.recalc_queue.counts(),
        },
        "consumers": {
            "webhooks": {"processed": services.webhook_consumer.processed, "failed": services.webhook_consumer.failed},
            "recalculation": {"processed": services.recalc_consumer.processed, "failed": services.recalc_consumer.failed},
        },
        "background_tasks": services.tasks.stats(),
    }
