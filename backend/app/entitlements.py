"""
Pay-per-view plans ("grants").

A purchase pins the N listings nearest to the buyer's chosen point inside one
area. From then on only those listings count against the plan, the plan's
view counter only moves for listings in that pinned set, and the plan stops
granting access once it is past `valid_until` or its counter reaches N.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import geo, listings
from app.db import atomic
from app.errors import InvalidRequest, NoMatchingListings, NotEntitled, TransactionFailed
from app.listings import ListingFilters, normalize_area
from app.models import Grant, GrantListing, GrantView, Listing, User, utcnow
from app.pricing import PricingPolicy

logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    area: str = Field(..., min_length=1, max_length=160)
    houses_to_view: int = Field(..., ge=1)
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    room_type: str | None = None
    min_rent: int | None = Field(default=None, ge=0)
    max_rent: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check(self) -> "PurchaseRequest":
        if not normalize_area(self.area):
            raise ValueError("area must contain letters or digits")
        if self.min_rent is not None and self.max_rent is not None and self.min_rent > self.max_rent:
            raise ValueError("min_rent cannot be greater than max_rent")
        return self

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "PurchaseRequest":
        """Validate a raw payload, turning pydantic errors into InvalidRequest."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidRequest("Invalid purchase request", fields=validation_fields(e))

    def filters(self) -> ListingFilters:
        return ListingFilters.build(room_type=self.room_type, min_rent=self.min_rent, max_rent=self.max_rent)


def validation_fields(e: ValidationError) -> dict[str, str]:
    out: dict[str, str] = {}
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc") or ()) or "__root__"
        out[loc] = str(err.get("msg") or "invalid")
    return out


@dataclass(frozen=True)
class PinnedListing:
    listing: Listing
    rank: int
    distance_km: float | None


@dataclass(frozen=True)
class PurchaseResult:
    grant: Grant
    pinned: list[PinnedListing]


@dataclass(frozen=True)
class AccessStatus:
    has_access: bool
    grant: Grant | None = None
    remaining: int | None = None


NO_ACCESS = AccessStatus(has_access=False)


class EntitlementService:
    def __init__(self, pricing: PricingPolicy, *, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self.pricing = pricing
        self.clock = clock

    # -----------------------
    # Purchase
    # -----------------------
    def purchase(self, db: Session, user: User, request: PurchaseRequest) -> PurchaseResult:
        origin = (request.latitude, request.longitude)
        if not geo.is_valid_point(*origin):
            raise InvalidRequest("A valid location is required to pick the nearest houses", fields={"latitude": "required", "longitude": "required"})
        n = int(request.houses_to_view)
        quote = self.pricing.quote(n)

        filters = request.filters()
        candidates = listings.query(db, request.area, filters)
        if not candidates:
            raise NoMatchingListings(f"No houses available in {request.area.strip()} with the selected filters")

        ranked = geo.nearest(origin, candidates, lambda lst: (lst.gps_lat, lst.gps_lng), n)
        now = self.clock()

        grant = Grant(
            user_id=int(user.id),
            area=request.area.strip(),
            area_normalized=normalize_area(request.area),
            houses_to_view=n,
            amount_paid=int(quote.price),
            duration_days=int(quote.duration_days),
            origin_lat=float(request.latitude),
            origin_lng=float(request.longitude),
            filter_room_type=filters.room_type,
            filter_min_rent=filters.min_rent,
            filter_max_rent=filters.max_rent,
            created_at=now,
            valid_until=now + dt.timedelta(days=int(quote.duration_days)),
            active=True,
            houses_viewed=0,
        )
        try:
            # Simulated payment: the commit of these rows is the payment.
            with atomic(db):
                db.add(grant)
                db.flush()
                db.add_all(
                    [
                        GrantListing(
                            grant_id=grant.id,
                            user_id=int(user.id),
                            listing_id=int(lst.id),
                            rank=rank,
                            distance_km=None if dkm is None else round(float(dkm), 3),
                            created_at=now,
                        )
                        for rank, (lst, dkm) in enumerate(ranked)
                    ]
                )
                db.flush()
        except SQLAlchemyError:
            logger.exception(
                "Plan purchase failed; rolled back (user_id=%s area=%r houses=%s origin=%s filters=%s pool=%s)",
                user.id,
                request.area,
                n,
                origin,
                filters,
                len(candidates),
            )
            raise TransactionFailed("Payment failed, please try again. You have not been charged.")

        logger.info(
            "Plan purchased: grant_id=%s user_id=%s area=%r houses=%s pinned=%s amount=%s days=%s",
            grant.id,
            user.id,
            grant.area,
            n,
            len(ranked),
            grant.amount_paid,
            grant.duration_days,
        )
        pinned = [PinnedListing(listing=lst, rank=rank, distance_km=dkm) for rank, (lst, dkm) in enumerate(ranked)]
        return PurchaseResult(grant=grant, pinned=pinned)

    # -----------------------
    # Access
    # -----------------------
    def check_access(self, db: Session, user: User | None, area: str | None) -> AccessStatus:
        area_norm = normalize_area(area)
        if user is None or not area_norm:
            return NO_ACCESS
        now = self.clock()
        grant = (
            db.execute(
                select(Grant)
                .where(
                    (Grant.user_id == int(user.id))
                    & (Grant.area_normalized == area_norm)
                    & (Grant.active == True)  # noqa: E712
                    & (Grant.valid_until > now)
                    & (Grant.houses_viewed < Grant.houses_to_view)
                )
                .order_by(Grant.created_at.desc(), Grant.id.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )
        if not grant:
            return NO_ACCESS
        return AccessStatus(has_access=True, grant=grant, remaining=grant.remaining)

    def plan_for_listing(self, db: Session, user: User | None, listing: Listing) -> Grant | None:
        """
        Most recent unexpired plan of `user` that pins `listing`.

        Unlike check_access this also returns plans whose counter is used up, so
        houses the buyer already paid for stay open until the plan expires.
        """
        if user is None:
            return None
        now = self.clock()
        return (
            db.execute(
                select(Grant)
                .join(GrantListing, GrantListing.grant_id == Grant.id)
                .where(
                    (Grant.user_id == int(user.id))
                    & (GrantListing.listing_id == int(listing.id))
                    & (Grant.active == True)  # noqa: E712
                    & (Grant.valid_until > now)
                )
                .order_by(Grant.created_at.desc(), Grant.id.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )

    def is_pinned(self, db: Session, grant: Grant, listing_id: int) -> bool:
        row = db.execute(
            select(GrantListing.id).where((GrantListing.grant_id == grant.id) & (GrantListing.listing_id == int(listing_id)))
        ).first()
        return row is not None

    def pinned_listings(self, db: Session, grant: Grant) -> list[PinnedListing]:
        rows = db.execute(
            select(GrantListing, Listing)
            .join(Listing, GrantListing.listing_id == Listing.id)
            .where(GrantListing.grant_id == grant.id)
            .order_by(GrantListing.rank.asc(), GrantListing.id.asc())
        ).all()
        return [PinnedListing(listing=lst, rank=int(gl.rank), distance_km=gl.distance_km) for (gl, lst) in rows]

    def pinned_count(self, db: Session, grant: Grant) -> int:
        return int(db.execute(select(func.count(GrantListing.id)).where(GrantListing.grant_id == grant.id)).scalar() or 0)

    def is_counted(self, db: Session, grant: Grant, listing_id: int) -> bool:
        row = db.execute(
            select(GrantView.id).where((GrantView.grant_id == grant.id) & (GrantView.listing_id == int(listing_id)))
        ).first()
        return row is not None

    def record_view(self, db: Session, grant: Grant, listing_id: int) -> bool:
        """
        Count a detail view of `listing_id` against `grant`.

        Each pinned listing is counted at most once per grant; the counter never
        exceeds houses_to_view. Returns True when the counter moved.
        """
        if not self.is_pinned(db, grant, listing_id):
            raise NotEntitled(f"Listing {int(listing_id)} is not part of plan {grant.id}")

        if self.is_counted(db, grant, listing_id):
            return False
        try:
            with db.begin_nested():
                db.add(GrantView(grant_id=grant.id, listing_id=int(listing_id), viewed_at=self.clock()))
        except IntegrityError:
            # A concurrent request counted this listing first.
            return False

        res = db.execute(
            update(Grant)
            .where((Grant.id == grant.id) & (Grant.houses_viewed < Grant.houses_to_view))
            .values(houses_viewed=Grant.houses_viewed + 1)
            .execution_options(synchronize_session=False)
        )
        db.refresh(grant, ["houses_viewed"])
        moved = bool(res.rowcount)
        if moved:
            logger.info("Plan %s: counted view of listing %s (%s/%s)", grant.id, listing_id, grant.houses_viewed, grant.houses_to_view)
        return moved

    # -----------------------
    # History
    # -----------------------
    def history(self, db: Session, user: User) -> list[Grant]:
        return list(
            db.execute(select(Grant).where(Grant.user_id == int(user.id)).order_by(Grant.created_at.desc(), Grant.id.desc()))
            .scalars()
            .all()
        )
