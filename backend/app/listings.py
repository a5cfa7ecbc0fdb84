from __future__ import annotations

import re
from dataclasses import dataclass

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, selectinload

from app.models import Listing


def normalize_area(s: str | None) -> str:
    """
    Normalize human-entered area/city names for strict matching.
    - lowercase
    - strip
    - replace non-alphanumeric with spaces
    - collapse whitespace
    """
    s = (s or "").strip().lower()
    s = re.sub(r"[^a-z0-9]+", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s


@dataclass(frozen=True)
class ListingFilters:
    room_type: str | None = None
    min_rent: int | None = None
    max_rent: int | None = None
    gender_pref: str | None = None

    @classmethod
    def build(
        cls,
        *,
        room_type: str | None = None,
        min_rent: int | None = None,
        max_rent: int | None = None,
        gender_pref: str | None = None,
    ) -> "ListingFilters":
        rt = (room_type or "").strip()
        gp = (gender_pref or "").strip()
        return cls(
            room_type=rt if rt and rt.lower() != "all" else None,
            min_rent=int(min_rent) if min_rent is not None else None,
            max_rent=int(max_rent) if max_rent is not None else None,
            gender_pref=gp if gp and gp.lower() != "any" else None,
        )


def _apply_filters(stmt: Select, filters: ListingFilters | None) -> Select:
    if not filters:
        return stmt
    if filters.room_type:
        stmt = stmt.where(Listing.room_type == filters.room_type)
    if filters.min_rent is not None:
        stmt = stmt.where(Listing.rent >= int(filters.min_rent))
    if filters.max_rent is not None:
        stmt = stmt.where(Listing.rent <= int(filters.max_rent))
    if filters.gender_pref:
        stmt = stmt.where((Listing.gender_pref == filters.gender_pref) | (Listing.gender_pref == "Any"))
    return stmt


def _area_stmt(area: str | None, filters: ListingFilters | None) -> Select:
    stmt = select(Listing).where(Listing.available == True)  # noqa: E712
    area_norm = normalize_area(area)
    if area_norm:
        stmt = stmt.where(Listing.area_normalized == area_norm)
    return _apply_filters(stmt, filters)


def query(db: Session, area: str, filters: ListingFilters | None = None) -> list[Listing]:
    """
    Candidate pool for a plan: every available listing in `area` matching `filters`,
    most recent first.
    """
    if not normalize_area(area):
        return []
    stmt = (
        _area_stmt(area, filters)
        .options(selectinload(Listing.owner))
        .order_by(Listing.created_at.desc(), Listing.id.desc())
    )
    return list(db.execute(stmt).scalars().all())


def count(db: Session, area: str, filters: ListingFilters | None = None) -> int:
    if not normalize_area(area):
        return 0
    stmt = _area_stmt(area, filters).with_only_columns(func.count(Listing.id))
    return int(db.execute(stmt).scalar() or 0)


def browse(db: Session, area: str | None = None, filters: ListingFilters | None = None, *, limit: int = 50) -> list[Listing]:
    stmt = (
        _area_stmt(area, filters)
        .options(selectinload(Listing.owner))
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .limit(int(limit))
    )
    return list(db.execute(stmt).scalars().all())


def areas(db: Session) -> list[str]:
    """Distinct areas that currently have available listings (one display label per normalized key)."""
    rows = db.execute(
        select(Listing.area_normalized, func.min(Listing.area))
        .where((Listing.available == True) & (Listing.area_normalized != ""))  # noqa: E712
        .group_by(Listing.area_normalized)
        .order_by(Listing.area_normalized)
    ).all()
    return [str(label) for (_, label) in rows]


def get(db: Session, listing_id: int) -> Listing | None:
    return db.execute(
        select(Listing).options(selectinload(Listing.owner)).where(Listing.id == int(listing_id))
    ).scalar_one_or_none()


def by_owner(db: Session, owner_id: int) -> list[Listing]:
    return list(
        db.execute(
            select(Listing).where(Listing.owner_id == int(owner_id)).order_by(Listing.created_at.desc(), Listing.id.desc())
        )
        .scalars()
        .all()
    )
