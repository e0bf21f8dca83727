"""Service wiring shared by the API process and the queue worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.admin.recalculator import AchievementRecalculator
from coinbook.cache.registry import CacheRegistry
from coinbook.cache.store import CacheStore, MemoryStore, RedisStore
from coinbook.config import Settings
from coinbook.gamification.definitions import DefinitionStore
from coinbook.gamification.leaderboard_service import LeaderboardService
from coinbook.gamification.service import GamificationService
from coinbook.gamification.streak_service import resolve_zone
from coinbook.products.catalog import CatalogCache, ProductSource, ShopifyProductSource
from coinbook.products.service import ProductService
from coinbook.rankings.service import RankingOrchestrator
from coinbook.tasks import TaskRunner
from coinbook.telemetry import Telemetry
from coinbook.webhooks.handlers import WebhookProcessor
from coinbook.webhooks.queue import (
    RECALC_QUEUE,
    WEBHOOK_QUEUE,
    JobQueue,
    MemoryJobQueue,
    QueueConsumer,
    RedisJobQueue,
    RetentionPolicy,
)
from coinbook.webhooks.recalculation import CoinRecalculationHandler
from coinbook.ws.gateway import Gateway, LocalGateway
from coinbook.ws.manager import ConnectionManager, PendingBuffer

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    telemetry: Telemetry
    tasks: TaskRunner
    caches: CacheRegistry
    catalog: CatalogCache
    products: ProductService
    definitions: DefinitionStore
    leaderboard: LeaderboardService
    manager: ConnectionManager
    gateway: Gateway
    gamification: GamificationService
    rankings: RankingOrchestrator
    recalculator: AchievementRecalculator
    webhook_queue: JobQueue
    recalc_queue: JobQueue
    webhook_consumer: QueueConsumer
    recalc_consumer: QueueConsumer
    redis: aioredis.Redis | None = None

    @property
    def local_gateway(self) -> LocalGateway | None:
        return self.gateway if isinstance(self.gateway, LocalGateway) else None

    def start_consumers(self) -> None:
        self.webhook_consumer.start()
        self.recalc_consumer.start()

    async def close(self) -> None:
        await self.webhook_consumer.stop()
        await self.recalc_consumer.stop()
        self.catalog.close()
        await self.tasks.shutdown()


def _make_queue(name: str, settings: Settings, redis: aioredis.Redis | None) -> JobQueue:
    options: dict[str, Any] = {
        "max_retries": settings.webhook_max_retries,
        "backoff_base": settings.webhook_backoff_base_seconds,
        "lease_seconds": settings.job_lease_seconds,
        "retention": RetentionPolicy(
            completed_age=settings.completed_job_retention_seconds,
            completed_count=settings.completed_job_retention_count,
            failed_age=settings.failed_job_retention_seconds,
            failed_count=settings.failed_job_retention_count,
        ),
    }
    if settings.queue_backend == "redis":
        if redis is None:
            msg = "queue_backend=redis needs a Redis client"
            raise RuntimeError(msg)
        return RedisJobQueue(redis, name, **options)
    return MemoryJobQueue(name, **options)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    store: CacheStore | None = None,
    source: ProductSource | None = None,
    redis: aioredis.Redis | None = None,
    gateway: Gateway | None = None,
    telemetry: Telemetry | None = None,
) -> Services:
    """Build the object graph; nothing here touches the network."""
    telemetry = telemetry or Telemetry(dsn=settings.telemetry_dsn, environment=settings.telemetry_environment)
    tasks = TaskRunner(telemetry, max_concurrency=settings.background_task_concurrency)

    if store is None:
        if settings.cache_backend == "redis":
            if redis is None:
                msg = "cache_backend=redis needs a Redis client"
                raise RuntimeError(msg)
            store = RedisStore(redis)
        else:
            store = MemoryStore()
    caches = CacheRegistry.create(store, settings, telemetry)

    if source is None:
        source = ShopifyProductSource(
            settings.shopify_store_domain,
            settings.shopify_access_token,
            api_version=settings.shopify_api_version,
            timeout=settings.catalog_request_timeout_seconds,
            page_size=settings.catalog_page_size,
        )
    catalog = CatalogCache(caches.catalog, source, tasks)
    products = ProductService(session_factory, caches, catalog, employee_domain=settings.employee_email_domain)
    catalog.on_refresh = products.sync_metadata

    definitions = DefinitionStore(session_factory, caches)
    leaderboard = LeaderboardService(session_factory, caches)
    manager = ConnectionManager(PendingBuffer(ttl=settings.pending_event_ttl_seconds))
    if gateway is None:
        gateway = LocalGateway(manager)

    gamification = GamificationService(
        session_factory,
        caches,
        definitions,
        products,
        leaderboard,
        telemetry,
        streaks_zone=resolve_zone(settings.streak_timezone),
        sink=gateway,
    )
    rankings = RankingOrchestrator(session_factory, caches, gamification, gateway, tasks)
    recalculator = AchievementRecalculator(
        session_factory,
        caches,
        gamification,
        tasks,
        telemetry,
        batch_size=settings.recalc_batch_size,
    )

    webhook_queue = _make_queue(WEBHOOK_QUEUE, settings, redis)
    recalc_queue = _make_queue(RECALC_QUEUE, settings, redis)
    webhook_consumer = QueueConsumer(
        webhook_queue,
        WebhookProcessor(session_factory, caches, recalc_queue),
        concurrency=settings.webhook_concurrency,
        poll_interval=settings.queue_poll_interval_seconds,
        telemetry=telemetry,
    )
    recalc_consumer = QueueConsumer(
        recalc_queue,
        CoinRecalculationHandler(gamification),
        concurrency=settings.recalc_concurrency,
        poll_interval=settings.queue_poll_interval_seconds,
        telemetry=telemetry,
    )

    logger.info(
        "services_built",
        cache_backend=settings.cache_backend,
        queue_backend=settings.queue_backend,
        catalog_configured=getattr(source, "configured", True),
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        telemetry=telemetry,
        tasks=tasks,
        caches=caches,
        catalog=catalog,
        products=products,
        definitions=definitions,
        leaderboard=leaderboard,
        manager=manager,
        gateway=gateway,
        gamification=gamification,
        rankings=rankings,
        recalculator=recalculator,
        webhook_queue=webhook_queue,
        recalc_queue=recalc_queue,
        webhook_consumer=webhook_consumer,
        recalc_consumer=recalc_consumer,
        redis=redis,
    )
