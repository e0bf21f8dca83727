"""Initial schema: users, rankings, achievements, logs and catalog tables.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-16
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# BIGSERIAL on Postgres; SQLite only autoincrements INTEGER PRIMARY KEY.
BIG_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
TS = sa.DateTime(timezone=True)
NOW = sa.text("CURRENT_TIMESTAMP")


def _id() -> sa.Column:  # type: ignore[type-arg]
    return sa.Column("id", BIG_ID, primary_key=True, autoincrement=True)


def _user_fk(*, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:  # type: ignore[type-arg]
    return sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    # --- Users & auth ---
    op.create_table(
        "users",
        _id(),
        sa.Column("shopify_customer_id", sa.String(64), unique=True, nullable=True),
        sa.Column("email", sa.String(320), unique=True, nullable=False),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("role", sa.String(32), nullable=False, server_default="user"),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
        sa.Column("last_seen", TS, nullable=True),
    )
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(128), primary_key=True),
        _user_fk(),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
        sa.Column("expires_at", TS, nullable=False),
    )
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])
    op.create_table(
        "magic_links",
        _id(),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("token", sa.String(128), unique=True, nullable=False),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
    )

    # --- Rankings ---
    op.create_table(
        "product_rankings",
        _id(),
        _user_fk(),
        sa.Column("shopify_product_id", sa.String(64), nullable=False),
        sa.Column("ranking_list_id", sa.String(64), nullable=False, server_default="default"),
        sa.Column("ranking", sa.Integer(), nullable=False),
        sa.Column("product_data", sa.JSON(), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
        sa.Column("updated_at", TS, nullable=False, server_default=NOW),
        sa.UniqueConstraint("user_id", "shopify_product_id", "ranking_list_id", name="uq_rankings_user_product_list"),
    )
    op.create_index("ix_rankings_user_list", "product_rankings", ["user_id", "ranking_list_id"])
    op.create_index("ix_rankings_product", "product_rankings", ["shopify_product_id"])
    op.create_table(
        "ranking_operations",
        _id(),
        sa.Column("op_id", sa.String(128), unique=True, nullable=False),
        _user_fk(),
        sa.Column("shopify_product_id", sa.String(64), nullable=False),
        sa.Column("ranking_list_id", sa.String(64), nullable=False, server_default="default"),
        sa.Column("ranking", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
    )

    # --- Achievements ---
    op.create_table(
        "achievements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(64), unique=True, nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("icon", sa.String(256), nullable=True),
        sa.Column("collection_type", sa.String(32), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("requirement", sa.JSON(), nullable=False),
        sa.Column("has_tiers", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tier_thresholds", sa.JSON(), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "prerequisite_achievement_id",
            sa.Integer(),
            sa.ForeignKey("achievements.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("protein_categories", sa.JSON(), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
        sa.Column("updated_at", TS, nullable=False, server_default=NOW),
    )
    op.create_table(
        "user_achievements",
        _id(),
        _user_fk(),
        sa.Column(
            "achievement_id", sa.Integer(), sa.ForeignKey("achievements.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("current_tier", sa.String(16), nullable=True),
        sa.Column("percentage_complete", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress", sa.JSON(), nullable=False),
        sa.Column("earned_at", TS, nullable=False, server_default=NOW),
        sa.Column("updated_at", TS, nullable=False, server_default=NOW),
        sa.UniqueConstraint("user_id", "achievement_id", name="uq_user_achievements_user_achievement"),
    )
    op.create_index("ix_user_achievements_earned_at", "user_achievements", ["earned_at"])
    op.create_table(
        "streaks",
        _id(),
        _user_fk(),
        sa.Column("streak_type", sa.String(32), nullable=False),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_date", sa.Date(), nullable=True),
        sa.Column("updated_at", TS, nullable=False, server_default=NOW),
        sa.UniqueConstraint("user_id", "streak_type", name="uq_streaks_user_type"),
    )

    # --- Append-only logs ---
    op.create_table(
        "activity_logs",
        _id(),
        _user_fk(),
        sa.Column("activity_type", sa.String(32), nullable=False),
        sa.Column("activity_data", sa.JSON(), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
    )
    op.create_index("ix_activity_logs_user_type", "activity_logs", ["user_id", "activity_type"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])
    op.create_table(
        "product_views",
        _id(),
        _user_fk(nullable=True),
        sa.Column("shopify_product_id", sa.String(64), nullable=False),
        sa.Column("viewed_at", TS, nullable=False, server_default=NOW),
    )
    op.create_index("ix_product_views_product_time", "product_views", ["shopify_product_id", "viewed_at"])
    op.create_table(
        "page_views",
        _id(),
        _user_fk(nullable=True),
        sa.Column("page_type", sa.String(32), nullable=False),
        sa.Column("page_identifier", sa.String(128), nullable=True),
        sa.Column("viewed_at", TS, nullable=False, server_default=NOW),
    )
    op.create_index("ix_page_views_user_type", "page_views", ["user_id", "page_type"])
    op.create_table(
        "product_searches",
        _id(),
        _user_fk(nullable=True),
        sa.Column("query", sa.String(256), nullable=False),
        sa.Column("result_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("searched_at", TS, nullable=False, server_default=NOW),
    )
    op.create_index("ix_product_searches_user", "product_searches", ["user_id"])

    # --- Catalog & commerce ---
    op.create_table(
        "product_metadata",
        _id(),
        sa.Column("shopify_product_id", sa.String(64), unique=True, nullable=False),
        sa.Column("title", sa.String(256), nullable=True),
        sa.Column("vendor", sa.String(128), nullable=True),
        sa.Column("animal_type", sa.String(32), nullable=True),
        sa.Column("animal_display", sa.String(64), nullable=True),
        sa.Column("animal_icon", sa.String(16), nullable=True),
        sa.Column("primary_flavor", sa.String(32), nullable=True),
        sa.Column("secondary_flavors", sa.JSON(), nullable=True),
        sa.Column("flavor_display", sa.String(128), nullable=True),
        sa.Column("flavor_icon", sa.String(16), nullable=True),
        sa.Column("force_rankable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", TS, nullable=False, server_default=NOW),
        sa.Column("updated_at", TS, nullable=False, server_default=NOW),
    )
    op.create_table(
        "customer_order_items",
        _id(),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=True),
        _user_fk(nullable=True, ondelete="SET NULL"),
        sa.Column("customer_email", sa.String(320), nullable=True),
        sa.Column("shopify_product_id", sa.String(64), nullable=False),
        sa.Column("sku", sa.String(64), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("fulfillment_status", sa.String(32), nullable=True),
        sa.Column("order_date", TS, nullable=False, server_default=NOW),
        sa.Column("cancelled_at", TS, nullable=True),
        sa.Column("updated_at", TS, nullable=False, server_default=NOW),
        sa.UniqueConstraint("order_id", "shopify_product_id", name="uq_order_items_order_product"),
    )
    op.create_index("ix_order_items_user_product", "customer_order_items", ["user_id", "shopify_product_id"])
    op.create_index("ix_order_items_order_date", "customer_order_items", ["order_date"])


def downgrade() -> None:
    for table in (
        "customer_order_items",
        "product_metadata",
        "product_searches",
        "page_views",
        "product_views",
        "activity_logs",
        "streaks",
        "user_achievements",
        "achievements",
        "ranking_operations",
        "product_rankings",
        "magic_links",
        "sessions",
        "users",
    ):
        op.drop_table(table)
