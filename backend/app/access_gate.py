from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app import geo, listings
from app.entitlements import EntitlementService, PinnedListing
from app.errors import ListingNotFound
from app.listings import ListingFilters
from app.models import Grant, Listing, User

logger = logging.getLogger(__name__)

REDACTED = "Hidden - payment required"

# Fields that are only released to callers holding a live plan for the listing.
GATED_FIELDS = ("description", "owner_name", "owner_email", "owner_phone")


def listing_out(p: Listing, *, distance_km: float | None = None) -> dict[str, Any]:
    o = getattr(p, "owner", None)
    out: dict[str, Any] = {
        "id": p.id,
        "title": p.title,
        "description": p.description or "",
        "rent": int(p.rent or 0),
        "rent_display": f"{int(p.rent or 0):,}",
        "area": p.area or "",
        "room_type": p.room_type,
        "gender_pref": p.gender_pref,
        "gps_lat": p.gps_lat,
        "gps_lng": p.gps_lng,
        "available": bool(p.available),
        "available_from": p.available_from.isoformat() if p.available_from else None,
        "created_at": p.created_at.isoformat() if getattr(p, "created_at", None) else "",
        "owner_name": ((getattr(o, "full_name", "") or "").strip() or "Owner") if o else "Owner",
        "owner_email": (getattr(o, "email", "") or "").strip() if o else "",
        "owner_phone": (getattr(o, "phone", "") or "").strip() if o else "",
        "locked": False,
    }
    if distance_km is not None:
        out["distance_km"] = round(float(distance_km), 3)
    return out


def redacted_out(p: Listing) -> dict[str, Any]:
    out = listing_out(p)
    for key in GATED_FIELDS:
        out[key] = REDACTED
    out["locked"] = True
    return out


def _distance_from_origin(grant: Grant, pin: PinnedListing) -> float | None:
    if pin.distance_km is not None:
        return pin.distance_km
    return geo.distance_km((grant.origin_lat, grant.origin_lng), (pin.listing.gps_lat, pin.listing.gps_lng))


class AccessGate:
    """
    Decides what a caller may see of a listing: full details for listings pinned
    to their live plan, a redacted projection for everything else.
    """

    def __init__(self, entitlements: EntitlementService) -> None:
        self.entitlements = entitlements

    def pinned_view(self, db: Session, grant: Grant) -> list[dict[str, Any]]:
        items: list[tuple[float | None, int, dict[str, Any]]] = []
        for pin in self.entitlements.pinned_listings(db, grant):
            dkm = _distance_from_origin(grant, pin)
            items.append((dkm, pin.rank, listing_out(pin.listing, distance_km=dkm)))
        items.sort(key=lambda x: (geo.distance_sort_key(x[0]), x[1]))
        return [item for (_, _, item) in items]

    def list_view(
        self,
        db: Session,
        user: User | None,
        *,
        area: str | None = None,
        filters: ListingFilters | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        status = self.entitlements.check_access(db, user, area)
        if status.has_access and status.grant is not None:
            return {
                "has_access": True,
                "grant_id": status.grant.id,
                "remaining": status.remaining,
                "items": self.pinned_view(db, status.grant),
            }
        rows = listings.browse(db, area, filters, limit=limit)
        return {"has_access": False, "items": [redacted_out(p) for p in rows]}

    def detail_view(self, db: Session, user: User | None, listing_id: int) -> dict[str, Any]:
        p = listings.get(db, listing_id)
        if not p:
            raise ListingNotFound("Listing not found")
        if user is not None and int(p.owner_id) == int(user.id):
            return listing_out(p)

        grant = self.entitlements.plan_for_listing(db, user, p)
        if grant is None:
            logger.debug("No unexpired plan of user %s pins listing %s; returning redacted view", getattr(user, "id", None), p.id)
            return redacted_out(p)
        # Once the counter reaches N this no longer moves it; the pinned house stays open.
        self.entitlements.record_view(db, grant, int(p.id))
        dkm = geo.distance_km((grant.origin_lat, grant.origin_lng), (p.gps_lat, p.gps_lng))
        out = listing_out(p, distance_km=dkm)
        out["plan"] = {"grant_id": grant.id, "remaining": grant.remaining, "houses_viewed": int(grant.houses_viewed)}
        return out
