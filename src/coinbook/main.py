"""FastAPI application factory.

The API is served by a single process: WebSocket connections and the buffer of
events for offline users are process-local, and a second API process would
replay the same Redis-published events into its own buffer. Webhook and
recalculation jobs scale out through the arq worker instead.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from coinbook.admin.router import router as admin_router
from coinbook.config import get_settings
from coinbook.container import Services, build_services
from coinbook.database import close_db, init_db
from coinbook.gamification.router import router as gamification_router
from coinbook.gamification.seed import seed_achievements
from coinbook.health.router import router as health_router
from coinbook.middleware import setup_middleware
from coinbook.products.router import router as products_router
from coinbook.rankings.router import router as rankings_router
from coinbook.redis_client import close_redis, init_redis
from coinbook.webhooks.router import router as webhooks_router
from coinbook.ws.bridge import PubSubBridge
from coinbook.ws.router import router as ws_router

logger = logging.getLogger(__name__)


async def _purge_pending(services: Services) -> None:
    """Drop buffered realtime events nobody came back for."""
    interval = services.settings.pending_event_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        purged = services.manager.pending.purge_expired()
        if purged:
            logger.info("Purged %d expired pending event(s)", purged)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle.

    An app built with prebuilt services (tests) skips connection setup.
    """
    owned = getattr(app.state, "services", None) is None
    settings = get_settings()
    if owned:
        session_factory = await init_db(
            settings.database_url, pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow
        )
        redis = None
        if "redis" in (settings.cache_backend, settings.queue_backend):
            redis = await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)
        app.state.services = build_services(settings, session_factory, redis=redis)

        try:
            await seed_achievements(session_factory)
        except Exception:
            logger.warning("Achievement seeding failed (tables may not exist yet)", exc_info=True)

    services: Services = app.state.services
    background: list[asyncio.Task[None]] = [asyncio.create_task(_purge_pending(services))]

    # In-process consumers only for the memory queue; the arq worker drains Redis queues.
    if services.settings.queue_backend == "memory":
        services.start_consumers()

    bridge = None
    if services.redis is not None and services.local_gateway is not None:
        bridge = PubSubBridge(services.redis, services.local_gateway)
        background.append(asyncio.create_task(bridge.start()))

    yield

    if bridge is not None:
        await bridge.stop()
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)

    await services.close()
    if owned:
        await close_db()
        await close_redis()


def create_app(services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = services.settings if services is not None else get_settings()

    app = FastAPI(
        title="Coinbook API",
        description="Rankings, achievements and realtime events for the jerky catalog",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(rankings_router)
    app.include_router(products_router)
    app.include_router(gamification_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)
    app.include_router(ws_router)

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn (the `coinbook-api` console script)."""
    settings = get_settings()
    uvicorn.run(
        "coinbook.main:app",
        host="0.0.0.0",  # noqa: S104
        port=settings.port,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
        workers=1,
    )
