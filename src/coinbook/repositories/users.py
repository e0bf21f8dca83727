"""User, session and magic-link persistence."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.db.models import MagicLink, Session, User


class UserRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: int) -> User | None:
        return await self.db.get(User, user_id)

    async def get_many(self, user_ids: list[int]) -> dict[int, User]:
        if not user_ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(user_ids)))
        return {u.id: u for u in result.scalars()}

    async def get_by_email(self, email: str) -> User | None:
        result = await self.db.execute(select(User).where(func.lower(User.email) == email.lower()))
        return result.scalar_one_or_none()

    async def get_by_customer_id(self, customer_id: str) -> User | None:
        result = await self.db.execute(select(User).where(User.shopify_customer_id == customer_id))
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        *,
        role: str = "user",
        first_name: str | None = None,
        last_name: str | None = None,
        display_name: str | None = None,
        shopify_customer_id: str | None = None,
    ) -> User:
        user = User(
            email=email,
            role=role,
            first_name=first_name,
            last_name=last_name,
            display_name=display_name,
            shopify_customer_id=shopify_customer_id,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(user)
        await self.db.flush()
        return user

    async def upsert_from_customer(
        self,
        customer_id: str,
        email: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[User, bool]:
        """Idempotent on customer id; links an existing account with the same email.

        Returns (user, created).
        """
        user = await self.get_by_customer_id(customer_id)
        if user is None and email:
            user = await self.get_by_email(email)

        if user is None:
            user = await self.create(
                email or f"customer-{customer_id}@placeholder.invalid",
                first_name=first_name,
                last_name=last_name,
                shopify_customer_id=customer_id,
            )
            return user, True

        user.shopify_customer_id = customer_id
        if email and user.email != email:
            user.email = email
        if first_name is not None:
            user.first_name = first_name
        if last_name is not None:
            user.last_name = last_name
        await self.db.flush()
        return user, False

    async def list_ids(self) -> list[int]:
        result = await self.db.execute(select(User.id).order_by(User.id))
        return list(result.scalars())

    async def count(self) -> int:
        return int(await self.db.scalar(select(func.count(User.id))) or 0)


class SessionRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_valid(self, session_id: str, now: datetime | None = None) -> Session | None:
        if not session_id:
            return None
        session = await self.db.get(Session, session_id)
        if session is None:
            return None
        if session.expires_at <= (now or datetime.now(timezone.utc)):
            return None
        return session

    async def create(self, user_id: int, ttl: timedelta = timedelta(days=30)) -> Session:
        now = datetime.now(timezone.utc)
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
        )
        self.db.add(session)
        await self.db.flush()
        return session


class MagicLinkRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, email: str, ttl: timedelta = timedelta(minutes=15)) -> MagicLink:
        now = datetime.now(timezone.utc)
        link = MagicLink(
            email=email.lower(),
            token=secrets.token_urlsafe(32),
            expires_at=now + ttl,
            used=False,
            created_at=now,
        )
        self.db.add(link)
        await self.db.flush()
        return link

    async def consume(self, token: str, now: datetime | None = None) -> MagicLink | None:
        """Mark a link used; returns None if unknown, expired or already used."""
        result = await self.db.execute(select(MagicLink).where(MagicLink.token == token))
        link = result.scalar_one_or_none()
        if link is None or link.used:
            return None
        if link.expires_at <= (now or datetime.now(timezone.utc)):
            return None
        link.used = True
        await self.db.flush()
        return link
