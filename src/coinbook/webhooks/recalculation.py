"""Coin-recalculation jobs (order cancellations and fulfillment downgrades).

The worker runs the engine in audit mode: stored tiers and points are never
lowered, divergences are recorded as ``coin_divergence`` activity and
telemetry messages for review.
"""

from __future__ import annotations

from typing import Any

import structlog

from coinbook.errors import PermanentJobError
from coinbook.gamification.requirements import COLLECTION_TYPES
from coinbook.gamification.service import GamificationService
from coinbook.webhooks.queue import Job

logger = structlog.get_logger()


class CoinRecalculationHandler:
    def __init__(self, gamification: GamificationService) -> None:
        self.gamification = gamification

    async def __call__(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        try:
            user_id = int(payload["user_id"])
        except (KeyError, TypeError, ValueError) as exc:
            msg = "Recalculation job needs a numeric user_id"
            raise PermanentJobError(msg) from exc

        coin_type = payload.get("coin_type") or "all"
        if coin_type != "all" and coin_type not in COLLECTION_TYPES:
            msg = f"Unknown coin_type: {coin_type}"
            raise PermanentJobError(msg)

        divergences = await self.gamification.audit_user(
            user_id,
            coin_type=coin_type,
            reason=payload.get("reason"),
        )
        logger.info(
            "coin_recalculation_audited",
            user_id=user_id,
            coin_type=coin_type,
            reason=payload.get("reason"),
            divergences=len(divergences),
            context=payload.get("context"),
        )
        return {"user_id": user_id, "divergences": divergences}
