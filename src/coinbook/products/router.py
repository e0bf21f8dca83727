"""Catalog endpoints: search, rankable products and the full enriched catalog."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from coinbook.auth.dependencies import get_current_user, get_optional_user, get_services
from coinbook.container import Services
from coinbook.db.models import User
from coinbook.products.service import paginate, sort_products

router = APIRouter(prefix="/api/products", tags=["Products"])


@router.get("/search")
async def search_products(
    query: str | None = Query(None, alias="q", max_length=200),
    sort: str = Query("name-asc"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    user: User | None = Depends(get_optional_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Filter the enriched catalog; signed-in searches are recorded."""
    products = sort_products(await services.products.get_all(query), sort)
    if user is not None and query and query.strip():
        services.tasks.spawn(
            "record_search",
            services.gamification.record_search(user.id, query.strip(), len(products)),
            user_id=user.id,
        )
    return paginate(products, page, limit)


@router.get("/rankable")
async def rankable_products(
    query: str | None = Query(None, alias="q", max_length=200),
    sort: str = Query("name-asc"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Products the user may still rank on the default list."""
    products = await services.products.get_rankable_for_user(user, query)
    return paginate(sort_products(products, sort), page, limit)


@router.get("/all")
async def all_products(
    sort: str = Query("name-asc"),
    page: int = Query(1, ge=1),
    limit: int = Query(250, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    products = await services.products.get_all()
    return paginate(sort_products(products, sort), page, limit)
