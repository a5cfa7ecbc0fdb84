from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime) -> dt.datetime:
    """SQLite hands back naive datetimes for timezone-aware columns; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), default="")
    phone: Mapped[str] = mapped_column(String(32), default="")
    role: Mapped[str] = mapped_column(String(32), default="taker")  # seller | taker
    # Reward balance from confirmed lead referrals. Read-only for the plan/unlock code.
    points: Mapped[int] = mapped_column(Integer, default=0)

    password_hash: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    listings = relationship("Listing", back_populates="owner")
    grants = relationship("Grant", back_populates="user")


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    rent: Mapped[int] = mapped_column(Integer, default=0, index=True)
    room_type: Mapped[str] = mapped_column(String(40), default="1BHK", index=True)
    gender_pref: Mapped[str] = mapped_column(String(16), default="Any")

    # Area == city for now. Plans and search match on the normalized key.
    area: Mapped[str] = mapped_column(String(160), default="")
    area_normalized: Mapped[str] = mapped_column(String(160), default="", index=True)

    # GPS coordinates supplied by the seller (no geocoding server-side).
    gps_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    available_from: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    available: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="listings")


class Grant(Base):
    """
    A paid plan: full access to the N listings nearest to (origin_lat, origin_lng)
    in one area, until `valid_until`.
    """

    __tablename__ = "grants"
    __table_args__ = (
        CheckConstraint("houses_viewed >= 0", name="ck_grants_viewed_non_negative"),
        CheckConstraint("houses_viewed <= houses_to_view", name="ck_grants_viewed_within_quota"),
        Index("ix_grants_user_area", "user_id", "area_normalized"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    area: Mapped[str] = mapped_column(String(160))
    area_normalized: Mapped[str] = mapped_column(String(160))

    houses_to_view: Mapped[int] = mapped_column(Integer)
    amount_paid: Mapped[int] = mapped_column(Integer)
    duration_days: Mapped[int] = mapped_column(Integer)

    origin_lat: Mapped[float] = mapped_column(Float)
    origin_lng: Mapped[float] = mapped_column(Float)

    # Candidate-pool filters used at purchase time (kept for audit/history).
    filter_room_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    filter_min_rent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    filter_max_rent: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    valid_until: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Audit flag flipped by the expiry sweeper. Access checks always re-derive expiry from valid_until.
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    houses_viewed: Mapped[int] = mapped_column(Integer, default=0)

    user = relationship("User", back_populates="grants")
    pinned = relationship("GrantListing", back_populates="grant", order_by="GrantListing.rank")

    @property
    def remaining(self) -> int:
        return max(0, int(self.houses_to_view) - int(self.houses_viewed or 0))

    def status_at(self, now: dt.datetime) -> str:
        if as_utc(self.valid_until) <= as_utc(now):
            return "expired"
        if int(self.houses_viewed or 0) >= int(self.houses_to_view):
            return "exhausted"
        return "active"


class GrantListing(Base):
    """
    One pinned listing of a grant. Written together with the grant, never updated or deleted.
    """

    __tablename__ = "grant_listings"
    __table_args__ = (
        UniqueConstraint("grant_id", "listing_id", name="uq_grant_listing"),
        Index("ix_grant_listings_user_grant", "user_id", "grant_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    grant_id: Mapped[int] = mapped_column(ForeignKey("grants.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id"), index=True)
    rank: Mapped[int] = mapped_column(Integer, default=0)
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    grant = relationship("Grant", back_populates="pinned")
    listing = relationship("Listing")


class GrantView(Base):
    """
    Tracks which pinned listings have already been counted against a grant's quota.
    """

    __tablename__ = "grant_views"
    __table_args__ = (UniqueConstraint("grant_id", "listing_id", name="uq_grant_view"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    grant_id: Mapped[int] = mapped_column(ForeignKey("grants.id"), index=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id"))
    viewed_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
