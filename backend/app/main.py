from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app import listings
from app.access_gate import AccessGate
from app.config import (
    allowed_hosts,
    cors_origins,
    enforce_secure_secrets,
    expiry_sweep_interval_seconds,
    is_local_dev,
    pricing_policy,
    sweeper_key,
)
from app.db import ENGINE, atomic, session_scope
from app.entitlements import EntitlementService, PurchaseRequest
from app.errors import EntitlementError, entitlement_error_handler
from app.listings import ListingFilters, normalize_area
from app.mailer import send_plan_receipt
from app.models import Base, Grant, GrantListing, Listing, User, as_utc
from app.rate_limit import LOGIN, PURCHASE, limiter
from app.security import create_access_token, hash_password, user_id_from_token, verify_password
from app.sweeper import start_scheduler, stop_scheduler, sweep_expired_grants


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if is_local_dev():
        # sqlite fallback: create tables directly; real deployments run `alembic upgrade head`.
        Base.metadata.create_all(ENGINE)
    start_scheduler(expiry_sweep_interval_seconds())
    yield
    stop_scheduler()


app = FastAPI(title="FindMyRoom API", lifespan=lifespan)

# Production hardening: ensure we don't run with dangerous defaults.
enforce_secure_secrets()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts())
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Built once; handlers reach them through `request.app.state`.
app.state.entitlements = EntitlementService(pricing_policy())
app.state.gate = AccessGate(app.state.entitlements)

app.add_exception_handler(EntitlementError, entitlement_error_handler)


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    fields: dict[str, str] = {}
    for err in exc.errors():
        loc = [str(x) for x in (err.get("loc") or ()) if x not in ("body", "query", "path")]
        fields[".".join(loc) or "body"] = str(err.get("msg") or "invalid")
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "code": "INVALID_REQUEST", "fields": fields})


@app.middleware("http")
async def _security_headers(request, call_next):
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


# -----------------------
# Dependencies
# -----------------------
def get_db():
    with session_scope() as db:
        yield db


def get_entitlements(request: Request) -> EntitlementService:
    return request.app.state.entitlements


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def get_current_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> User:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Please login to continue")
    user_id = user_id_from_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_optional_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> User | None:
    token = _bearer_token(authorization)
    if not token:
        return None
    user_id = user_id_from_token(token)
    if not user_id:
        return None
    return db.get(User, user_id)


def require_seller(me: Annotated[User, Depends(get_current_user)]) -> User:
    if (me.role or "").lower() != "seller":
        raise HTTPException(status_code=403, detail="Only sellers can manage listings")
    return me


# -----------------------
# Schemas
# -----------------------
class RegisterIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6)
    full_name: str = ""
    phone: str = ""
    role: str = "taker"  # seller | taker


class LoginIn(BaseModel):
    email: str
    password: str


class ListingCreateIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    rent: int = Field(..., ge=0)
    area: str = Field(..., min_length=1, max_length=160)
    room_type: str = "1BHK"
    gender_pref: str = "Any"
    available_from: dt.date | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


def _user_out(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "full_name": u.full_name,
        "phone": u.phone,
        "role": u.role,
        "points": int(u.points or 0),
        "created_at": as_utc(u.created_at).isoformat() if u.created_at else "",
    }


def _owner_listing_out(p: Listing) -> dict[str, Any]:
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "rent": int(p.rent or 0),
        "area": p.area,
        "room_type": p.room_type,
        "gender_pref": p.gender_pref,
        "gps_lat": p.gps_lat,
        "gps_lng": p.gps_lng,
        "available": bool(p.available),
        "available_from": p.available_from.isoformat() if p.available_from else None,
        "created_at": as_utc(p.created_at).isoformat() if p.created_at else "",
    }


def _grant_out(g: Grant, *, now: dt.datetime, pinned_count: int) -> dict[str, Any]:
    return {
        "id": g.id,
        "area": g.area,
        "houses_to_view": int(g.houses_to_view),
        "houses_viewed": int(g.houses_viewed or 0),
        "remaining": g.remaining,
        "pinned_count": int(pinned_count),
        "amount_paid": int(g.amount_paid),
        "duration_days": int(g.duration_days),
        "status": g.status_at(now),
        "active": bool(g.active),
        "created_at": as_utc(g.created_at).isoformat(),
        "valid_until": as_utc(g.valid_until).isoformat(),
        "origin": {"lat": g.origin_lat, "lng": g.origin_lng},
        "filters": {"room_type": g.filter_room_type, "min_rent": g.filter_min_rent, "max_rent": g.filter_max_rent},
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# -----------------------
# Auth
# -----------------------
@app.post("/auth/register")
def register(data: RegisterIn, db: Annotated[Session, Depends(get_db)]):
    email = (data.email or "").strip().lower()
    role = (data.role or "taker").strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email")
    if role not in {"seller", "taker"}:
        raise HTTPException(status_code=400, detail="Invalid role")
    if db.execute(select(User.id).where(User.email == email)).first():
        raise HTTPException(status_code=409, detail="Email already registered")

    u = User(
        email=email,
        full_name=(data.full_name or "").strip(),
        phone=(data.phone or "").strip(),
        role=role,
        password_hash=hash_password(data.password),
    )
    db.add(u)
    try:
        db.flush()
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Email already registered")
    return {"access_token": create_access_token(user_id=u.id, role=u.role), "user": _user_out(u)}


@app.post("/auth/login")
def login(data: LoginIn, db: Annotated[Session, Depends(get_db)]):
    email = (data.email or "").strip().lower()
    limiter.hit(LOGIN, email)
    u = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not u or not verify_password(data.password, u.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return {"access_token": create_access_token(user_id=u.id, role=u.role), "user": _user_out(u)}


@app.get("/me")
def me_profile(me: Annotated[User, Depends(get_current_user)]) -> dict[str, Any]:
    return _user_out(me)


# -----------------------
# Seller listings
# -----------------------
@app.post("/owner/listings", status_code=201)
def owner_create_listing(
    data: ListingCreateIn,
    me: Annotated[User, Depends(require_seller)],
    db: Annotated[Session, Depends(get_db)],
):
    area = data.area.strip()
    if not normalize_area(area):
        raise HTTPException(status_code=400, detail="Area is required")
    gender = (data.gender_pref or "Any").strip().title()
    if gender not in {"Any", "Male", "Female"}:
        raise HTTPException(status_code=400, detail="gender_pref must be Any, Male or Female")
    if (data.latitude is None) != (data.longitude is None):
        raise HTTPException(status_code=400, detail="Provide both latitude and longitude, or neither")

    p = Listing(
        owner_id=me.id,
        title=data.title.strip(),
        description=(data.description or "").strip(),
        rent=int(data.rent),
        area=area,
        area_normalized=normalize_area(area),
        room_type=(data.room_type or "1BHK").strip() or "1BHK",
        gender_pref=gender,
        available_from=data.available_from,
        gps_lat=data.latitude,
        gps_lng=data.longitude,
        available=True,
    )
    db.add(p)
    db.flush()
    logger.info("Listing created: id=%s owner_id=%s area=%r", p.id, me.id, p.area)
    return _owner_listing_out(p)


@app.get("/owner/listings")
def owner_list_listings(
    me: Annotated[User, Depends(require_seller)],
    db: Annotated[Session, Depends(get_db)],
):
    return {"items": [_owner_listing_out(p) for p in listings.by_owner(db, me.id)]}


@app.delete("/owner/listings/{listing_id:int}")
def owner_delete_listing(
    listing_id: int,
    me: Annotated[User, Depends(require_seller)],
    db: Annotated[Session, Depends(get_db)],
):
    p = db.get(Listing, int(listing_id))
    if not p or int(p.owner_id) != int(me.id):
        raise HTTPException(status_code=404, detail="Listing not found or not authorized")
    pinned = db.execute(select(GrantListing.id).where(GrantListing.listing_id == p.id).limit(1)).first()
    if pinned:
        # Paid plans reference this listing; hide it instead of breaking their pinned sets.
        p.available = False
        db.add(p)
        return {"ok": True, "archived": True}
    db.delete(p)
    return {"ok": True, "archived": False}


# -----------------------
# Listings (browse is free; details are plan-gated)
# -----------------------
@app.get("/listings")
def list_listings(
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
    gate: Annotated[AccessGate, Depends(get_gate)],
    area: str | None = Query(default=None),
    room_type: str | None = Query(default=None),
    min_rent: int | None = Query(default=None, ge=0),
    max_rent: int | None = Query(default=None, ge=0),
    gender_pref: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
):
    filters = ListingFilters.build(room_type=room_type, min_rent=min_rent, max_rent=max_rent, gender_pref=gender_pref)
    return gate.list_view(db, me, area=area, filters=filters, limit=limit)


@app.get("/listings/{listing_id:int}")
def get_listing(
    listing_id: int,
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
    gate: Annotated[AccessGate, Depends(get_gate)],
):
    return gate.detail_view(db, me, listing_id)


# -----------------------
# Pay-per-view plans
# -----------------------
@app.get("/payments/pricing")
def payments_pricing(svc: Annotated[EntitlementService, Depends(get_entitlements)]):
    return svc.pricing.as_dict()


@app.get("/payments/quote")
def payments_quote(
    svc: Annotated[EntitlementService, Depends(get_entitlements)],
    houses: int = Query(..., ge=1),
):
    q = svc.pricing.quote(houses)
    return {"houses": q.houses, "price": q.price, "duration_days": q.duration_days}


@app.get("/payments/areas")
def payments_areas(db: Annotated[Session, Depends(get_db)]):
    return {"areas": listings.areas(db)}


@app.get("/payments/available-houses")
def payments_available_houses(
    db: Annotated[Session, Depends(get_db)],
    area: str = Query(..., min_length=1),
    room_type: str | None = Query(default=None),
    min_rent: int | None = Query(default=None, ge=0),
    max_rent: int | None = Query(default=None, ge=0),
):
    filters = ListingFilters.build(room_type=room_type, min_rent=min_rent, max_rent=max_rent)
    return {"area": area.strip(), "available_houses": listings.count(db, area, filters)}


@app.post("/payments/purchase")
def payments_purchase(
    payload: Annotated[dict[str, Any], Body()],
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    svc: Annotated[EntitlementService, Depends(get_entitlements)],
    gate: Annotated[AccessGate, Depends(get_gate)],
):
    limiter.hit(PURCHASE, me.id)
    result = svc.purchase(db, me, PurchaseRequest.parse(payload))
    grant_out = _grant_out(result.grant, now=svc.clock(), pinned_count=len(result.pinned))
    houses = gate.pinned_view(db, result.grant)
    send_plan_receipt(to_email=me.email, grant=grant_out, houses=houses)
    return {"message": "Payment processed successfully", "grant": grant_out, "houses": houses}


@app.get("/payments/check-access")
def payments_check_access(
    db: Annotated[Session, Depends(get_db)],
    me: Annotated[User | None, Depends(get_optional_user)],
    svc: Annotated[EntitlementService, Depends(get_entitlements)],
    area: str = Query(..., min_length=1),
):
    if me is None:
        return {"has_access": False, "message": "Please login to continue"}
    status = svc.check_access(db, me, area)
    if not status.has_access or status.grant is None:
        return {"has_access": False}
    g = status.grant
    return {
        "has_access": True,
        "grant_id": g.id,
        "houses_to_view": int(g.houses_to_view),
        "houses_viewed": int(g.houses_viewed or 0),
        "remaining": status.remaining,
        "amount_paid": int(g.amount_paid),
        "valid_until": as_utc(g.valid_until).isoformat(),
    }


@app.get("/payments/accessible-houses")
def payments_accessible_houses(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    svc: Annotated[EntitlementService, Depends(get_entitlements)],
    gate: Annotated[AccessGate, Depends(get_gate)],
    area: str = Query(..., min_length=1),
):
    status = svc.check_access(db, me, area)
    if not status.has_access or status.grant is None:
        return {"has_access": False, "message": "No active plan for this area", "houses": []}
    houses = gate.pinned_view(db, status.grant)
    return {
        "has_access": True,
        "plan": _grant_out(status.grant, now=svc.clock(), pinned_count=len(houses)),
        "houses": houses,
    }


@app.get("/payments/history")
def payments_history(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    svc: Annotated[EntitlementService, Depends(get_entitlements)],
):
    now = svc.clock()
    return {"payments": [_grant_out(g, now=now, pinned_count=svc.pinned_count(db, g)) for g in svc.history(db, me)]}


@app.post("/payments/sweep")
def payments_sweep(
    db: Annotated[Session, Depends(get_db)],
    svc: Annotated[EntitlementService, Depends(get_entitlements)],
    x_sweeper_key: Annotated[str | None, Header()] = None,
):
    key = sweeper_key()
    if not key and not is_local_dev():
        raise HTTPException(status_code=403, detail="SWEEPER_KEY not configured")
    if key and (x_sweeper_key or "").strip() != key:
        raise HTTPException(status_code=403, detail="Invalid sweeper key")
    try:
        with atomic(db):
            count = sweep_expired_grants(db, svc.clock())
    except SQLAlchemyError:
        logger.exception("On-demand expiry sweep failed")
        raise HTTPException(status_code=503, detail="Sweep failed, try again later")
    return {"deactivated": count}
