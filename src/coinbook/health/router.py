"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from coinbook.auth.dependencies import get_services
from coinbook.container import Services

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: returns 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(services: Services = Depends(get_services)) -> dict[str, object]:  # noqa: B008
    """Readiness probe: checks the database and, when used, Redis."""
    checks: dict[str, object] = {}

    try:
        async with services.session_factory() as db:
            result = await db.execute(text("SELECT 1"))
            result.scalar()
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    if services.redis is not None:
        try:
            await services.redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    return {
        "status": "ready" if all_ok else "degraded",
        "checks": checks,
        "telemetry": services.telemetry.stats(),
        "background_tasks": services.tasks.stats(),
        "websocket": services.manager.get_stats(),
    }


@router.get("/version")
async def version(services: Services = Depends(get_services)) -> dict[str, str]:  # noqa: B008
    """Return API version and environment."""
    return {
        "version": services.settings.app_version,
        "environment": services.settings.environment,
    }
