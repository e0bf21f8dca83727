"""Per-transaction bundle of repositories.

Services open one unit of work per logical operation; it commits on success,
rolls back on error and translates driver failures into public error kinds.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.errors import Conflict, DependencyUnavailable
from coinbook.repositories.achievements import AchievementRepository, UserAchievementRepository
from coinbook.repositories.activity import ActivityRepository, ViewRepository
from coinbook.repositories.catalog import MetadataRepository, OrderRepository
from coinbook.repositories.rankings import RankingOperationRepository, RankingRepository
from coinbook.repositories.streaks import StreakRepository
from coinbook.repositories.users import MagicLinkRepository, SessionRepository, UserRepository


class Repositories:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.users = UserRepository(db)
        self.sessions = SessionRepository(db)
        self.magic_links = MagicLinkRepository(db)
        self.rankings = RankingRepository(db)
        self.ranking_operations = RankingOperationRepository(db)
        self.achievements = AchievementRepository(db)
        self.user_achievements = UserAchievementRepository(db)
        self.streaks = StreakRepository(db)
        self.activity = ActivityRepository(db)
        self.views = ViewRepository(db)
        self.metadata = MetadataRepository(db)
        self.orders = OrderRepository(db)

    async def commit(self) -> None:
        await self.db.commit()


@asynccontextmanager
async def unit_of_work(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[Repositories]:
    async with session_factory() as session:
        try:
            yield Repositories(session)
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            msg = "Conflicting write; re-read and retry"
            raise Conflict(msg) from exc
        except (OperationalError, InterfaceError) as exc:
            await session.rollback()
            msg = "Data store unavailable"
            raise DependencyUnavailable(msg) from exc
        except BaseException:
            await session.rollback()
            raise
