"""Catalog source (the commerce API) and the cached catalog in front of it."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
import structlog

from coinbook.cache.base import SINGLETON, NamedCache
from coinbook.errors import DependencyUnavailable
from coinbook.tasks import TaskRunner

logger = structlog.get_logger()

PAGE_SIZE = 250
RANKABLE_TAG = "rankable"
FETCH_ATTEMPTS = 3
PRODUCT_FIELDS = "id,title,handle,body_html,images,variants,vendor,product_type,tags"


class ProductSource(Protocol):
    async def fetch_all(self) -> list[dict[str, Any]]: ...


def parse_tags(tags: Any) -> list[str]:  # noqa: ANN401
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [str(t).strip().lower() for t in tags if str(t).strip()]


def normalize_product(raw: dict[str, Any]) -> dict[str, Any]:
    """Flatten a commerce product into the fields the service enriches."""
    images = raw.get("images") or []
    variants = raw.get("variants") or []
    image = raw.get("image")
    if isinstance(image, dict):
        image = image.get("src")
    return {
        "id": str(raw["id"]),
        "title": raw.get("title") or "",
        "handle": raw.get("handle") or "",
        "vendor": raw.get("vendor") or "",
        "product_type": raw.get("product_type") or "",
        "tags": parse_tags(raw.get("tags")),
        "body": raw.get("body_html") or raw.get("body") or "",
        "image": image or (images[0].get("src") if images else None),
        "price": variants[0].get("price") if variants else raw.get("price"),
    }


def is_rankable(product: dict[str, Any]) -> bool:
    return RANKABLE_TAG in parse_tags(product.get("tags"))


class ShopifyProductSource:
    """Admin REST products endpoint, cursor-paginated through the Link header."""

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        *,
        api_version: str = "2024-01",
        timeout: float = 15.0,
        page_size: int = PAGE_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_base: float = 0.5,
    ) -> None:
        self.store_domain = store_domain
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self.page_size = page_size
        self.transport = transport
        self.backoff_base = backoff_base

    @property
    def configured(self) -> bool:
        return bool(self.store_domain and self.access_token)

    async def fetch_all(self) -> list[dict[str, Any]]:
        if not self.configured:
            msg = "Catalog source credentials are not configured"
            raise DependencyUnavailable(msg)

        url = f"https://{self.store_domain}/admin/api/{self.api_version}/products.json"
        products: list[dict[str, Any]] = []
        page_info: str | None = None
        pages = 0

        async with httpx.AsyncClient(
            headers={"X-Shopify-Access-Token": self.access_token},
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            while True:
                params: dict[str, Any] = {"limit": self.page_size, "fields": PRODUCT_FIELDS}
                if page_info:
                    params["page_info"] = page_info
                else:
                    # status may only accompany the first page request
                    params["status"] = "active"

                response = await self._get(client, url, params)
                batch = response.json().get("products") or []
                products.extend(batch)
                pages += 1

                next_link = response.links.get("next", {}).get("url")
                page_info = httpx.URL(next_link).params.get("page_info") if next_link else None
                if not batch or len(batch) < self.page_size or not page_info:
                    break

        rankable = [normalize_product(p) for p in products if is_rankable(p)]
        logger.info("catalog_fetched", pages=pages, total=len(products), rankable=len(rankable))
        return rankable

    async def _get(self, client: httpx.AsyncClient, url: str, params: dict[str, Any]) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(1, FETCH_ATTEMPTS + 1):
            try:
                response = await client.get(url, params=params)
                if response.status_code == 429 or response.status_code >= 500:
                    response.raise_for_status()
                if response.status_code >= 400:
                    msg = f"Catalog source rejected the request ({response.status_code})"
                    raise DependencyUnavailable(msg)
                return response
            except (httpx.TransportError, httpx.HTTPStatusError) as exc:
                last_error = exc
                logger.warning("catalog_fetch_retry", attempt=attempt, error=str(exc))
                if attempt < FETCH_ATTEMPTS:
                    await asyncio.sleep(self.backoff_base * 2 ** (attempt - 1))
        msg = f"Catalog source unavailable after {FETCH_ATTEMPTS} attempts"
        raise DependencyUnavailable(msg) from last_error


RefreshHook = Callable[[list[dict[str, Any]]], Awaitable[None]]


class CatalogCache:
    """Single cached catalog snapshot.

    Reads are stale-while-revalidate; every successful fill runs ``on_refresh``
    (metadata sync) and schedules the next refresh shortly before expiry.
    """

    def __init__(
        self,
        cache: NamedCache,
        source: ProductSource,
        tasks: TaskRunner,
        *,
        on_refresh: RefreshHook | None = None,
        lead_seconds: float = 60.0,
    ) -> None:
        self.cache = cache
        self.source = source
        self.tasks = tasks
        self.on_refresh = on_refresh
        self.lead_seconds = lead_seconds
        self.refreshes = 0
        self._timer: asyncio.TimerHandle | None = None

    async def _load(self) -> list[dict[str, Any]]:
        products = await self.source.fetch_all()
        self.refreshes += 1
        if self.on_refresh is not None:
            try:
                await self.on_refresh(products)
            except Exception:
                logger.warning("catalog_refresh_hook_failed", exc_info=True)
        self._schedule_refresh()
        return products

    def _schedule_refresh(self) -> None:
        if self.cache.ttl is None:
            return
        if self._timer is not None:
            self._timer.cancel()
        delay = max(1.0, self.cache.ttl - self.lead_seconds)
        self._timer = asyncio.get_running_loop().call_later(delay, self._proactive_refresh)

    def _proactive_refresh(self) -> None:
        self._timer = None
        self.tasks.spawn("catalog_refresh", self.refresh())

    async def refresh(self) -> list[dict[str, Any]]:
        return await self.cache.refresh_in_background(SINGLETON, self._load)

    async def get(self) -> list[dict[str, Any]]:
        return await self.cache.get_or_load(SINGLETON, self._load, stale_while_revalidate=True)

    async def invalidate(self) -> None:
        await self.cache.invalidate()

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
