"""
Session and role checks.

Sign-in itself (magic links, OAuth) happens elsewhere; this module only turns a
session id into a user and decides who counts as an employee admin.
"""

from __future__ import annotations

import structlog

from coinbook.db.models import User
from coinbook.errors import NotAuthenticated, NotAuthorized
from coinbook.repositories.unit_of_work import Repositories

logger = structlog.get_logger()

EMPLOYEE_ROLE = "employee_admin"


def is_employee_admin(user: User | None, employee_domain: str) -> bool:
    """Employee role, or an email address on the operator's domain."""
    if user is None:
        return False
    if user.role == EMPLOYEE_ROLE:
        return True
    email = (user.email or "").lower()
    return bool(employee_domain) and email.endswith("@" + employee_domain.lower())


async def resolve_session(repos: Repositories, session_id: str | None) -> User:
    """Return the session's user or raise NotAuthenticated."""
    if not session_id:
        msg = "Authentication required"
        raise NotAuthenticated(msg)
    session = await repos.sessions.get_valid(session_id)
    if session is None:
        msg = "Invalid or expired session"
        raise NotAuthenticated(msg)
    user = await repos.users.get(session.user_id)
    if user is None:
        msg = "Session user no longer exists"
        raise NotAuthenticated(msg)
    return user


def require_employee(user: User, employee_domain: str) -> User:
    if not is_employee_admin(user, employee_domain):
        logger.info("employee_access_denied", user_id=user.id)
        msg = "Employee admin access required"
        raise NotAuthorized(msg)
    return user

