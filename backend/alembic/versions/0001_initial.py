"""initial schema (users, listings)

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("phone", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="taker"),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("rent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("room_type", sa.String(length=40), nullable=False, server_default="1BHK"),
        sa.Column("gender_pref", sa.String(length=16), nullable=False, server_default="Any"),
        sa.Column("area", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("area_normalized", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("gps_lat", sa.Float(), nullable=True),
        sa.Column("gps_lng", sa.Float(), nullable=True),
        sa.Column("available_from", sa.Date(), nullable=True),
        sa.Column("available", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_listings_owner_id", "listings", ["owner_id"])
    op.create_index("ix_listings_rent", "listings", ["rent"])
    op.create_index("ix_listings_room_type", "listings", ["room_type"])
    op.create_index("ix_listings_area_normalized", "listings", ["area_normalized"])
    op.create_index("ix_listings_available", "listings", ["available"])
    op.create_index("ix_listings_created_at", "listings", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_listings_created_at", table_name="listings")
    op.drop_index("ix_listings_available", table_name="listings")
    op.drop_index("ix_listings_area_normalized", table_name="listings")
    op.drop_index("ix_listings_room_type", table_name="listings")
    op.drop_index("ix_listings_rent", table_name="listings")
    op.drop_index("ix_listings_owner_id", table_name="listings")
    op.drop_table("listings")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
