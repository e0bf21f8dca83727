"""FastAPI authentication dependencies."""

from __future__ import annotations

from fastapi import Depends, Request

from coinbook.auth.service import is_employee_admin, require_employee, resolve_session
from coinbook.container import Services
from coinbook.db.models import User
from coinbook.errors import NotAuthenticated
from coinbook.repositories.unit_of_work import unit_of_work

SESSION_COOKIE = "session_id"
SESSION_HEADER = "X-Session-Id"


def get_services(request: Request) -> Services:
    return request.app.state.services


def session_id_from(request: Request) -> str | None:
    """Header, then cookie, then ``sessionId`` query parameter."""
    return (
        request.headers.get(SESSION_HEADER)
        or request.cookies.get(SESSION_COOKIE)
        or request.query_params.get("sessionId")
    )


async def get_current_user(
    request: Request,
    services: Services = Depends(get_services),
) -> User:
    """Resolve the session to a user; 401 when missing or expired."""
    async with unit_of_work(services.session_factory) as repos:
        return await resolve_session(repos, session_id_from(request))


async def get_optional_user(
    request: Request,
    services: Services = Depends(get_services),
) -> User | None:
    if not session_id_from(request):
        return None
    try:
        return await get_current_user(request, services)
    except NotAuthenticated:
        return None


async def get_employee_user(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> User:
    return require_employee(user, services.settings.employee_email_domain)


def is_admin(user: User | None, services: Services) -> bool:
    return is_employee_admin(user, services.settings.employee_email_domain)
