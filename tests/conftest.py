"""Shared test fixtures.

Every test gets its own SQLite file (aiosqlite), in-memory caches and queues,
and a fixed catalog served by ``FakeProductSource``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from coinbook.cache.store import MemoryStore
from coinbook.config import Settings
from coinbook.container import Services, build_services
from coinbook.db import models  # noqa: F401
from coinbook.db.base import Base
from coinbook.errors import DependencyUnavailable
from coinbook.main import create_app
from coinbook.repositories.rankings import RankingInput
from coinbook.repositories.unit_of_work import unit_of_work


def make_product(product_id: str, title: str, vendor: str = "Jerky.com", tags: list[str] | None = None) -> dict[str, Any]:
    """A product as ``ShopifyProductSource.fetch_all`` returns it."""
    return {
        "id": product_id,
        "title": title,
        "handle": title.lower().replace(" ", "-"),
        "vendor": vendor,
        "product_type": "Jerky",
        "tags": tags if tags is not None else ["rankable"],
        "body": "",
        "image": None,
        "price": "9.99",
    }


CATALOG: list[dict[str, Any]] = [
    make_product("101", "Original Beef Jerky"),
    make_product("102", "Teriyaki Beef Jerky"),
    make_product("103", "Ghost Pepper Turkey Jerky"),
    make_product("104", "Honey BBQ Pork Jerky", vendor="Smokehouse"),
    make_product("105", "Cracked Pepper Elk Jerky", vendor="Smokehouse"),
]


class FakeProductSource:
    """Catalog source returning a fixed product list."""

    configured = True

    def __init__(self, products: list[dict[str, Any]] | None = None) -> None:
        self.products = list(CATALOG if products is None else products)
        self.calls = 0
        self.fail = False

    async def fetch_all(self) -> list[dict[str, Any]]:
        self.calls += 1
        if self.fail:
            msg = "catalog source down"
            raise DependencyUnavailable(msg)
        return [dict(p) for p in self.products]


def make_settings(database_url: str, **overrides: Any) -> Settings:  # noqa: ANN401
    values: dict[str, Any] = {
        "database_url": database_url,
        "cache_backend": "memory",
        "queue_backend": "memory",
        "employee_email_domain": "jerky.com",
        "rate_limit_requests": 10_000,
        "log_format": "console",
        "log_level": "WARNING",
        "webhook_backoff_base_seconds": 0.0,
        "queue_poll_interval_seconds": 0.05,
        "recalc_batch_size": 2,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "coinbook.db"


@pytest.fixture
def settings(db_path: Path) -> Settings:
    return make_settings(f"sqlite+aiosqlite:///{db_path}")


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(settings.database_url, poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def source() -> FakeProductSource:
    return FakeProductSource()


@pytest_asyncio.fixture
async def services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    source: FakeProductSource,
) -> AsyncGenerator[Services, None]:
    svc = build_services(settings, session_factory, store=MemoryStore(), source=source)
    yield svc
    await svc.tasks.drain(timeout=5)
    await svc.close()


@pytest_asyncio.fixture
async def seeded(services: Services) -> dict[str, Any]:
    """A customer, a second customer and an employee, each with a session.

    The catalog is loaded first so its metadata sync never runs inside
    another open write transaction (SQLite allows one writer).
    """
    await services.catalog.get()
    async with unit_of_work(services.session_factory) as repos:
        fan = await repos.users.create("fan@example.com", first_name="Jamie", last_name="Lee")
        rival = await repos.users.create("rival@example.com", display_name="Rival")
        staff = await repos.users.create("staff@jerky.com", first_name="Sam", last_name="Staff")
        fan_session = await repos.sessions.create(fan.id)
        rival_session = await repos.sessions.create(rival.id)
        staff_session = await repos.sessions.create(staff.id)
    return {
        "fan": fan,
        "rival": rival,
        "staff": staff,
        "fan_session": fan_session.id,
        "rival_session": rival_session.id,
        "staff_session": staff_session.id,
    }


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the ASGI app; the lifespan is not run."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_definitions(services: Services, *definitions: dict[str, Any]) -> dict[str, int]:
    """Insert achievement definitions; returns code -> id."""
    ids: dict[str, int] = {}
    async with unit_of_work(services.session_factory) as repos:
        for data in definitions:
            if isinstance(data.get("prerequisite"), str):
                data = {**data, "prerequisite_achievement_id": ids[data["prerequisite"]]}
            row, _ = await repos.achievements.upsert_by_code(data)
            ids[row.code] = row.id
    await services.caches.on_definitions_changed()
    return ids


async def rank_products(services: Services, user_id: int, *product_ids: str, list_id: str = "default") -> None:
    """Write a ranking list directly, without the request-path side effects."""
    async with unit_of_work(services.session_factory) as repos:
        await repos.rankings.replace_list(
            user_id,
            list_id,
            [RankingInput(product_id=pid, ranking=i, product_data={"id": pid}) for i, pid in enumerate(product_ids, 1)],
        )


def session_headers(session_id: str) -> dict[str, str]:
    return {"X-Session-Id": session_id}


def ranking_payload(*product_ids: str, list_id: str = "default") -> dict[str, Any]:
    by_id = {p["id"]: p for p in CATALOG}
    return {
        "list": list_id,
        "rankings": [
            {"product_data": {"id": pid, "title": by_id.get(pid, {}).get("title", pid)}, "rank": idx}
            for idx, pid in enumerate(product_ids, start=1)
        ],
    }
