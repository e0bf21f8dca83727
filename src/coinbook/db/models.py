"""ORM models for the ranking and gamification schema.

The alembic baseline creates the same tables; constraints and indexes here
mirror it so tests can build the schema with ``Base.metadata.create_all``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from coinbook.db.base import Base, BigIntPK, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users & auth
# ---------------------------------------------------------------------------


class User(Base):
    """Created on first authenticated contact or customer webhook; never destroyed."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    shopify_customer_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="user")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_seen: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Session(Base):
    """Server-side session keyed by the opaque session id the client holds."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class MagicLink(Base):
    """One-shot login token."""

    __tablename__ = "magic_links"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------


class ProductRanking(Base):
    """One product's position on one of a user's ranking lists."""

    __tablename__ = "product_rankings"
    __table_args__ = (
        UniqueConstraint("user_id", "shopify_product_id", "ranking_list_id", name="uq_rankings_user_product_list"),
        Index("ix_rankings_user_list", "user_id", "ranking_list_id"),
        Index("ix_rankings_product", "shopify_product_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    shopify_product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ranking_list_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    ranking: Mapped[int] = mapped_column(Integer, nullable=False)
    product_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class RankingOperation(Base):
    """Idempotency token for a single ranking action."""

    __tablename__ = "ranking_operations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    op_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    shopify_product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ranking_list_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    ranking: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class Achievement(Base):
    """Achievement ("coin") definition."""

    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str | None] = mapped_column(String(256), nullable=True)
    collection_type: Mapped[str] = mapped_column(String(32), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requirement: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    has_tiers: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tier_thresholds: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    prerequisite_achievement_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("achievements.id", ondelete="SET NULL"), nullable=True
    )
    protein_categories: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class UserAchievement(Base):
    """A user's current state on one achievement; unique on(user_id, achievement_id)."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievements_user_achievement"),
        Index("ix_user_achievements_earned_at", "earned_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    achievement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievements.id", ondelete="CASCADE"), nullable=False
    )
    current_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    percentage_complete: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    earned_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Streak(Base):
    """Per (user, streak_type) activity streak."""

    __tablename__ = "streaks"
    __table_args__ = (UniqueConstraint("user_id", "streak_type", name="uq_streaks_user_type"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    streak_type: Mapped[str] = mapped_column(String(32), nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Append-only logs
# ---------------------------------------------------------------------------


class ActivityLog(Base):
    """Append-only record of user actions."""

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("ix_activity_logs_user_type", "user_id", "activity_type"),
        Index("ix_activity_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    activity_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ProductView(Base):
    __tablename__ = "product_views"
    __table_args__ = (Index("ix_product_views_product_time", "shopify_product_id", "viewed_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    shopify_product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    viewed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class PageView(Base):
    __tablename__ = "page_views"
    __table_args__ = (Index("ix_page_views_user_type", "user_id", "page_type"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    page_type: Mapped[str] = mapped_column(String(32), nullable=False)
    page_identifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    viewed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ProductSearch(Base):
    __tablename__ = "product_searches"
    __table_args__ = (Index("ix_product_searches_user", "user_id"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    query: Mapped[str] = mapped_column(String(256), nullable=False)
    result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    searched_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Catalog & commerce
# ---------------------------------------------------------------------------


class ProductMetadata(Base):
    """Taxonomy derived from the catalog; upserted on sync, keyed by product id."""

    __tablename__ = "product_metadata"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    shopify_product_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    animal_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    animal_display: Mapped[str | None] = mapped_column(String(64), nullable=True)
    animal_icon: Mapped[str | None] = mapped_column(String(16), nullable=True)
    primary_flavor: Mapped[str | None] = mapped_column(String(32), nullable=True)
    secondary_flavors: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    flavor_display: Mapped[str | None] = mapped_column(String(128), nullable=True)
    flavor_icon: Mapped[str | None] = mapped_column(String(16), nullable=True)
    force_rankable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class CustomerOrderItem(Base):
    """One purchased product on one order; unique on(order_id, shopify_product_id)."""

    __tablename__ = "customer_order_items"
    __table_args__ = (
        UniqueConstraint("order_id", "shopify_product_id", name="uq_order_items_order_product"),
        Index("ix_order_items_user_product", "user_id", "shopify_product_id"),
        Index("ix_order_items_order_date", "order_date"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    shopify_product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    fulfillment_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    order_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
