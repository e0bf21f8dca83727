"""Queue worker process (arq).

Runs the webhook and coin-recalculation consumers against the Redis-backed
queues and publishes realtime events for the API process to bridge.

    arq coinbook.webhooks.worker.WorkerSettings
"""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from coinbook.config import get_settings
from coinbook.container import build_services
from coinbook.database import close_db, init_db
from coinbook.middleware.logging import setup_logging
from coinbook.redis_client import close_redis, init_redis
from coinbook.ws.gateway import RedisGateway

logger = logging.getLogger(__name__)


async def worker_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Connect, build services on shared backends and start both consumers."""
    # The worker always shares queues and caches with the API through Redis.
    settings = get_settings().model_copy(update={"queue_backend": "redis", "cache_backend": "redis"})
    setup_logging(settings)
    session_factory = await init_db(
        settings.database_url, pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow
    )
    redis_client = await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)
    services = build_services(
        settings,
        session_factory,
        redis=redis_client,
        gateway=RedisGateway(redis_client),
    )
    services.start_consumers()
    ctx["services"] = services
    logger.info(
        "Queue worker started (webhooks x%d, recalculation x%d)",
        settings.webhook_concurrency,
        settings.recalc_concurrency,
    )


async def worker_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Stop consumers, then release connections."""
    services = ctx.get("services")
    if services is not None:
        await services.close()
    await close_redis()
    await close_db()
    logger.info("Queue worker shut down")


async def trim_queues(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: drop completed and failed jobs past their retention."""
    services = ctx["services"]
    removed = 0
    for queue in (services.webhook_queue, services.recalc_queue):
        removed += await queue.trim()
    if removed:
        logger.info("Trimmed %d retained job(s)", removed)
    return removed


async def queue_counts(ctx: dict) -> dict[str, dict[str, int]]:  # type: ignore[type-arg]
    """Scheduled task: log queue depth."""
    services = ctx["services"]
    counts = {
        services.webhook_queue.name: await services.webhook_queue.counts(),
        services.recalc_queue.name: await services.recalc_queue.counts(),
    }
    logger.info("Queue depth: %s", counts)
    return counts


class WorkerSettings:
    """arq worker settings for the webhook and recalculation consumers."""

    functions = [trim_queues, queue_counts]
    cron_jobs = [
        cron(trim_queues, minute={0, 15, 30, 45}),
        cron(queue_counts, minute=set(range(0, 60, 5))),
    ]
    on_startup = worker_startup
    on_shutdown = worker_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    job_timeout = 300
    allow_abort_jobs = True
