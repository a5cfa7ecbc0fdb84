"""pay-per-view plans: grants + pinned listings + counted views

Revision ID: 0002_grants
Revises: 0001_initial
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_grants"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "grants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("area", sa.String(length=160), nullable=False),
        sa.Column("area_normalized", sa.String(length=160), nullable=False),
        sa.Column("houses_to_view", sa.Integer(), nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("origin_lat", sa.Float(), nullable=False),
        sa.Column("origin_lng", sa.Float(), nullable=False),
        sa.Column("filter_room_type", sa.String(length=40), nullable=True),
        sa.Column("filter_min_rent", sa.Integer(), nullable=True),
        sa.Column("filter_max_rent", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("houses_viewed", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("houses_viewed >= 0", name="ck_grants_viewed_non_negative"),
        sa.CheckConstraint("houses_viewed <= houses_to_view", name="ck_grants_viewed_within_quota"),
    )
    op.create_index("ix_grants_user_id", "grants", ["user_id"])
    op.create_index("ix_grants_user_area", "grants", ["user_id", "area_normalized"])
    op.create_index("ix_grants_valid_until", "grants", ["valid_until"])
    op.create_index("ix_grants_active", "grants", ["active"])

    op.create_table(
        "grant_listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("grant_id", sa.Integer(), sa.ForeignKey("grants.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("distance_km", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("grant_id", "listing_id", name="uq_grant_listing"),
    )
    op.create_index("ix_grant_listings_grant_id", "grant_listings", ["grant_id"])
    op.create_index("ix_grant_listings_listing_id", "grant_listings", ["listing_id"])
    op.create_index("ix_grant_listings_user_grant", "grant_listings", ["user_id", "grant_id"])

    op.create_table(
        "grant_views",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("grant_id", sa.Integer(), sa.ForeignKey("grants.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("grant_id", "listing_id", name="uq_grant_view"),
    )
    op.create_index("ix_grant_views_grant_id", "grant_views", ["grant_id"])


def downgrade() -> None:
    op.drop_index("ix_grant_views_grant_id", table_name="grant_views")
    op.drop_table("grant_views")

    op.drop_index("ix_grant_listings_user_grant", table_name="grant_listings")
    op.drop_index("ix_grant_listings_listing_id", table_name="grant_listings")
    op.drop_index("ix_grant_listings_grant_id", table_name="grant_listings")
    op.drop_table("grant_listings")

    op.drop_index("ix_grants_active", table_name="grants")
    op.drop_index("ix_grants_valid_until", table_name="grants")
    op.drop_index("ix_grants_user_area", table_name="grants")
    op.drop_index("ix_grants_user_id", table_name="grants")
    op.drop_table("grants")
