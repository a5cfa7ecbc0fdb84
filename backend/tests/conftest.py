"""
Pytest configuration and shared fixtures for backend tests.

The app reads DATABASE_URL at import time, so the environment is prepared
before anything under `app` is imported.
"""

import datetime as dt
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="findmyroom-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP_DIR, "test.db")
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EMAIL_BACKEND"] = "disabled"
os.environ["SWEEPER_KEY"] = "sweep-key"
os.environ["EXPIRY_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient

from app.access_gate import AccessGate
from app.config import DEFAULT_PRICING_TABLE
from app.db import ENGINE, SessionLocal
from app.entitlements import EntitlementService
from app.listings import normalize_area
from app.main import app
from app.models import Base, Listing, User
from app.pricing import PricingPolicy
from app.rate_limit import limiter
from app.security import create_access_token

Base.metadata.create_all(ENGINE)

ORIGIN = (12.9716, 77.5946)
AREA = "Koramangala"
# Listing k sits 0.005 * k degrees due north of ORIGIN, so distance grows with k.
# Inserted out of order so "most recent first" and "nearest first" disagree.
POOL_ORDER = [7, 2, 11, 5, 1, 9, 3, 12, 6, 4, 10, 8]


class FrozenClock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _clean_state():
    with ENGINE.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    limiter.reset()
    yield


@pytest.fixture
def clock():
    return FrozenClock(dt.datetime.now(dt.timezone.utc).replace(microsecond=0))


@pytest.fixture
def pricing():
    return PricingPolicy(table=DEFAULT_PRICING_TABLE, per_house_rate=8, min_duration_days=1)


@pytest.fixture
def svc(pricing, clock):
    return EntitlementService(pricing, clock=clock)


@pytest.fixture
def gate(svc):
    return AccessGate(svc)


@pytest.fixture
def client(svc, gate):
    """TestClient whose app shares the test clock through app.state."""
    saved = (app.state.entitlements, app.state.gate)
    app.state.entitlements = svc
    app.state.gate = gate
    try:
        yield TestClient(app)
    finally:
        app.state.entitlements, app.state.gate = saved


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def make_user(db, email: str, *, role: str = "taker", full_name: str = "", phone: str = "") -> User:
    u = User(email=email, full_name=full_name or email.split("@")[0].title(), phone=phone, role=role, password_hash="x")
    db.add(u)
    db.commit()
    return u


def make_listing(
    db,
    owner: User,
    *,
    title: str,
    area: str = AREA,
    lat: float | None = None,
    lng: float | None = None,
    rent: int = 10000,
    room_type: str = "1BHK",
    description: str = "",
    available: bool = True,
) -> Listing:
    p = Listing(
        owner_id=owner.id,
        title=title,
        description=description or f"{title}: sunny room, 5 min to the bus stop",
        rent=rent,
        room_type=room_type,
        area=area,
        area_normalized=normalize_area(area),
        gps_lat=lat,
        gps_lng=lng,
        available=available,
    )
    db.add(p)
    db.commit()
    return p


def auth(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id=user.id, role=user.role)}"}


@pytest.fixture
def seller(db):
    return make_user(db, "owner@example.com", role="seller", full_name="Asha Rao", phone="+91 98450 00000")


@pytest.fixture
def taker(db):
    return make_user(db, "taker@example.com", role="taker", full_name="Ravi Kumar")


@pytest.fixture
def pool(db, seller):
    """Twelve listings in AREA keyed by their distance rank k (1 = nearest)."""
    out = {}
    for k in POOL_ORDER:
        out[k] = make_listing(
            db,
            seller,
            title=f"House {k}",
            lat=ORIGIN[0] + 0.005 * k,
            lng=ORIGIN[1],
            rent=5000 + 1000 * k,
            room_type="2BHK" if k % 2 == 0 else "1BHK",
        )
    return out
