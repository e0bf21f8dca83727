"""Enriched product views: catalog entry + metadata + ranking statistics."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.cache.base import SINGLETON
from coinbook.cache.registry import CacheRegistry
from coinbook.db.models import User
from coinbook.gamification.requirements import DynamicCollectionRequirement
from coinbook.products.catalog import CatalogCache
from coinbook.products.eligibility import resolve_eligibility
from coinbook.products.extractors import extract_metadata
from coinbook.repositories.catalog import metadata_to_dict
from coinbook.repositories.rankings import DEFAULT_LIST
from coinbook.repositories.unit_of_work import unit_of_work

logger = structlog.get_logger()

SORT_FIELDS = ("name", "recent", "avgrank", "totalranks")

_EMPTY_STATS = {
    "ranking_count": 0,
    "unique_rankers": 0,
    "avg_rank": None,
    "best_rank": None,
    "worst_rank": None,
    "last_ranked_at": None,
}
_EMPTY_METADATA = {
    "animal_type": None,
    "animal_display": None,
    "animal_icon": None,
    "primary_flavor": None,
    "secondary_flavors": [],
    "flavor_display": None,
    "flavor_icon": None,
    "force_rankable": False,
}


def matches_query(product: dict[str, Any], query: str | None) -> bool:
    """Every whitespace-separated word must appear in the searchable text."""
    words = (query or "").lower().split()
    if not words:
        return True
    haystack = " ".join(
        str(product.get(f) or "")
        for f in ("title", "vendor", "product_type", "animal_display", "flavor_display")
    ).lower()
    return all(word in haystack for word in words)


def sort_products(products: list[dict[str, Any]], sort: str = "name-asc") -> list[dict[str, Any]]:
    field, _, order = sort.partition("-")
    if field not in SORT_FIELDS:
        return list(products)
    reverse = order == "desc"

    def key(p: dict[str, Any]) -> Any:  # noqa: ANN401
        if field == "name":
            return p["title"].lower()
        if field == "recent":
            return p.get("last_ranked_at") or ""
        if field == "avgrank":
            return p["avg_rank"] if p.get("avg_rank") is not None else 9999
        return p.get("ranking_count") or 0

    return sorted(products, key=key, reverse=reverse)


def paginate(items: list[Any], page: int, limit: int) -> dict[str, Any]:
    page = max(1, page)
    limit = max(1, limit)
    start = (page - 1) * limit
    return {
        "items": items[start : start + limit],
        "total": len(items),
        "page": page,
        "limit": limit,
        "has_more": start + limit < len(items),
    }


class ProductService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: CacheRegistry,
        catalog: CatalogCache,
        *,
        employee_domain: str,
    ) -> None:
        self.session_factory = session_factory
        self.caches = caches
        self.catalog = catalog
        self.employee_domain = employee_domain

    # ── Cached lookups ──

    async def _load_metadata(self) -> dict[str, dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            rows = await repos.metadata.all()
        return {r.shopify_product_id: metadata_to_dict(r) for r in rows}

    async def metadata_map(self) -> dict[str, dict[str, Any]]:
        return await self.caches.metadata.get_or_load(SINGLETON, self._load_metadata)

    async def _load_ranking_stats(self) -> dict[str, dict[str, Any]]:
        async with unit_of_work(self.session_factory) as repos:
            stats = await repos.rankings.stats_by_product()
        return {pid: s.to_dict() for pid, s in stats.items()}

    async def ranking_stats(self) -> dict[str, dict[str, Any]]:
        return await self.caches.ranking_stats.get_or_load(SINGLETON, self._load_ranking_stats)

    async def sync_metadata(self, products: list[dict[str, Any]]) -> int:
        """Upsert title-derived metadata for fresh catalog data."""
        async with unit_of_work(self.session_factory) as repos:
            changed = await repos.metadata.upsert_many({p["id"]: extract_metadata(p) for p in products})
        await self.caches.on_metadata_changed()
        logger.info("metadata_synced", products=len(products), changed=changed)
        return changed

    # ── Enrichment ──

    @staticmethod
    def _enrich(
        product: dict[str, Any],
        metadata: dict[str, dict[str, Any]] | None,
        stats: dict[str, dict[str, Any]] | None,
    ) -> dict[str, Any]:
        enriched = dict(product)
        if metadata is not None:
            meta = metadata.get(product["id"])
            enriched.update({k: (meta or _EMPTY_METADATA).get(k, v) for k, v in _EMPTY_METADATA.items()})
        if stats is not None:
            row = stats.get(product["id"])
            enriched.update({k: (row or _EMPTY_STATS).get(k, v) for k, v in _EMPTY_STATS.items()})
        return enriched

    async def get_all(
        self,
        query: str | None = None,
        *,
        include_metadata: bool = True,
        include_ranking_stats: bool = True,
    ) -> list[dict[str, Any]]:
        products = await self.catalog.get()
        if not products:
            return []
        metadata = await self.metadata_map() if include_metadata else None
        stats = await self.ranking_stats() if include_ranking_stats else None
        enriched = [self._enrich(p, metadata, stats) for p in products]
        return [p for p in enriched if matches_query(p, query)]

    async def get_by_ids(self, product_ids: list[str]) -> list[dict[str, Any]]:
        """Requested ids in request order; unknown ids are dropped."""
        by_id = {p["id"]: p for p in await self.get_all()}
        seen: set[str] = set()
        result = []
        for pid in product_ids:
            pid = str(pid)
            if pid in by_id and pid not in seen:
                seen.add(pid)
                result.append(by_id[pid])
        return result

    async def get_rankable_for_user(self, user: User, query: str | None = None) -> list[dict[str, Any]]:
        """Unranked products on the default list the user is eligible to rank."""
        async with unit_of_work(self.session_factory) as repos:
            ranked = await repos.rankings.ranked_product_ids(user.id, DEFAULT_LIST)
            eligibility = await resolve_eligibility(repos, user, self.employee_domain)
        products = await self.get_all(query)
        return [p for p in products if p["id"] not in ranked and eligibility.allows(p["id"])]

    async def count_rankable(self) -> int:
        return len(await self.catalog.get())

    async def resolve(self, requirement: DynamicCollectionRequirement) -> set[str]:
        """Product ids a dynamic collection covers right now."""
        if requirement.selector == "all":
            return {p["id"] for p in await self.catalog.get()}

        wanted = {v.lower() for v in requirement.values}
        fields = {
            "animal": ("animal_display", "animal_type"),
            "brand": ("vendor",),
            "flavor": ("primary_flavor",),
        }[requirement.selector]
        return {
            pid
            for pid, meta in (await self.metadata_map()).items()
            if any((meta.get(f) or "").lower() in wanted for f in fields)
        }
