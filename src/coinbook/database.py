"""Engine and session factory shared by the API process and the queue worker.

Services never see the engine; they receive the session factory and open
one unit of work per operation.
"""

import logging
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(url: str, *, pool_size: int, max_overflow: int) -> dict[str, Any]:
    """Pool settings for a server database; SQLite keeps SQLAlchemy's defaults."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        return {}
    options: dict[str, Any] = {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }
    if parsed.get_driver_name() == "asyncpg":
        # pgbouncer in transaction mode cannot hold prepared statements
        options["connect_args"] = {"statement_cache_size": 0}
    return options


async def init_db(url: str, *, pool_size: int = 20, max_overflow: int = 10) -> async_sessionmaker[AsyncSession]:
    """Create the engine once and return the session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    if _session_factory is not None:
        return _session_factory
    _engine = create_async_engine(url, **engine_options(url, pool_size=pool_size, max_overflow=max_overflow))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Database engine created for %s", make_url(url).render_as_string(hide_password=True))
    return _session_factory


async def close_db() -> None:
    """Dispose of the engine; a later init_db() starts fresh."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
