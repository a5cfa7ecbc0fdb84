import datetime as dt

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.config import DEFAULT_PRICING_TABLE
from app.entitlements import EntitlementService, PurchaseRequest
from app.errors import InvalidRequest, NoMatchingListings, NotEntitled, TransactionFailed
from app.models import Grant, GrantListing, GrantView, as_utc
from app.pricing import PricingPolicy
from app.sweeper import sweep_expired_grants
from tests.conftest import AREA, ORIGIN, make_listing


def _request(houses=5, area=AREA, **extra):
    data = {"area": area, "houses_to_view": houses, "latitude": ORIGIN[0], "longitude": ORIGIN[1]}
    data.update(extra)
    return PurchaseRequest.parse(data)


def _rows(db, model):
    return int(db.execute(select(func.count()).select_from(model)).scalar() or 0)


def test_purchase_pins_the_nearest_listings(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(5))

    assert [p.listing.id for p in result.pinned] == [pool[k].id for k in (1, 2, 3, 4, 5)]
    assert [p.rank for p in result.pinned] == [0, 1, 2, 3, 4]
    distances = [p.distance_km for p in result.pinned]
    assert distances == sorted(distances)

    g = result.grant
    assert (g.houses_to_view, g.houses_viewed, g.amount_paid, g.duration_days) == (5, 0, 40, 3)
    assert g.active is True
    assert as_utc(g.valid_until) - as_utc(g.created_at) == dt.timedelta(days=3)
    assert _rows(db, GrantListing) == 5


def test_purchase_records_price_and_duration_for_larger_plans(db, svc, taker, pool):
    g = svc.purchase(db, taker, _request(10)).grant
    assert (g.amount_paid, g.duration_days) == (80, 7)


def test_pinned_set_is_capped_by_pool_size(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(15))
    assert len(result.pinned) == 12
    assert result.grant.houses_to_view == 15
    assert result.grant.amount_paid == 120


def test_filters_narrow_the_pool_before_ranking(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(5, room_type="2BHK"))
    assert [p.listing.id for p in result.pinned] == [pool[k].id for k in (2, 4, 6, 8, 10)]
    assert result.grant.filter_room_type == "2BHK"

    result = svc.purchase(db, taker, _request(3, min_rent=9000, max_rent=11000))
    assert {p.listing.id for p in result.pinned} == {pool[k].id for k in (4, 5, 6)}


def test_listings_without_coordinates_rank_last(db, svc, seller, taker, pool):
    nowhere = make_listing(db, seller, title="No GPS")
    result = svc.purchase(db, taker, _request(13))
    assert result.pinned[-1].listing.id == nowhere.id
    assert result.pinned[-1].distance_km is None
    stored = db.execute(select(GrantListing).where(GrantListing.listing_id == nowhere.id)).scalar_one()
    assert stored.distance_km is None


def test_area_match_ignores_case_and_spacing(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(2, area="  koramangala "))
    assert len(result.pinned) == 2


def test_empty_pool_writes_nothing(db, svc, taker, pool):
    with pytest.raises(NoMatchingListings):
        svc.purchase(db, taker, _request(5, area="Indiranagar"))
    with pytest.raises(NoMatchingListings):
        svc.purchase(db, taker, _request(5, min_rent=90000))
    assert _rows(db, Grant) == 0
    assert _rows(db, GrantListing) == 0


def test_unavailable_listings_are_not_candidates(db, svc, seller, taker):
    make_listing(db, seller, title="Taken", lat=ORIGIN[0], lng=ORIGIN[1], available=False)
    with pytest.raises(NoMatchingListings):
        svc.purchase(db, taker, _request(1))


@pytest.mark.parametrize(
    "payload,field",
    [
        ({"area": AREA, "houses_to_view": 5}, "latitude"),
        ({"area": AREA, "houses_to_view": 5, "latitude": 12.9}, "longitude"),
        ({"area": AREA, "houses_to_view": 0, "latitude": 12.9, "longitude": 77.5}, "houses_to_view"),
        ({"area": AREA, "houses_to_view": 5, "latitude": 95.0, "longitude": 77.5}, "latitude"),
        ({"houses_to_view": 5, "latitude": 12.9, "longitude": 77.5}, "area"),
    ],
)
def test_malformed_purchase_is_rejected(payload, field):
    with pytest.raises(InvalidRequest) as exc:
        PurchaseRequest.parse(payload)
    assert field in exc.value.fields


def test_blank_area_and_inverted_rent_range_are_rejected():
    with pytest.raises(InvalidRequest):
        PurchaseRequest.parse({"area": " - ", "houses_to_view": 1, "latitude": 1, "longitude": 1})
    with pytest.raises(InvalidRequest):
        _request(1, min_rent=20000, max_rent=10000)


def test_plans_beyond_the_table_are_not_capped(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(60))
    assert result.grant.amount_paid == 480
    assert len(result.pinned) == 12


def test_configured_plan_size_cap(db, taker, pool, clock):
    capped = EntitlementService(PricingPolicy(table=DEFAULT_PRICING_TABLE, max_houses=10), clock=clock)
    with pytest.raises(InvalidRequest):
        capped.purchase(db, taker, _request(11))
    with pytest.raises(InvalidRequest):
        capped.pricing.quote(11)
    assert _rows(db, Grant) == 0


def test_failed_pin_insert_rolls_back_the_grant(db, svc, taker, pool, monkeypatch):
    real_flush = db.flush
    calls = {"n": 0}

    def flaky_flush(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OperationalError("INSERT INTO grant_listings", {}, Exception("disk I/O error"))
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(db, "flush", flaky_flush)
    with pytest.raises(TransactionFailed):
        svc.purchase(db, taker, _request(5))
    monkeypatch.undo()

    assert _rows(db, Grant) == 0
    assert _rows(db, GrantListing) == 0


def test_failed_commit_rolls_back_everything(db, svc, taker, pool, monkeypatch):
    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(TransactionFailed):
        svc.purchase(db, taker, _request(5))
    monkeypatch.undo()

    assert _rows(db, Grant) == 0
    assert _rows(db, GrantListing) == 0
    # A retry goes through once storage recovers.
    assert len(svc.purchase(db, taker, _request(5)).pinned) == 5


def test_views_of_distinct_pinned_listings_each_count_once(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(5))
    g = result.grant
    for pin in result.pinned[:3]:
        assert svc.record_view(db, g, pin.listing.id) is True
    db.commit()
    assert g.houses_viewed == 3
    assert g.remaining == 2

    assert svc.record_view(db, g, result.pinned[0].listing.id) is False
    db.commit()
    assert g.houses_viewed == 3
    assert _rows(db, GrantView) == 3


def test_view_outside_pinned_set_is_refused(db, svc, taker, pool):
    g = svc.purchase(db, taker, _request(5)).grant
    with pytest.raises(NotEntitled):
        svc.record_view(db, g, pool[9].id)
    db.commit()
    db.refresh(g)
    assert g.houses_viewed == 0
    assert _rows(db, GrantView) == 0


def test_counter_never_exceeds_plan_size(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(5))
    g = result.grant
    for _ in range(4):
        for pin in result.pinned:
            svc.record_view(db, g, pin.listing.id)
            assert 0 <= g.houses_viewed <= g.houses_to_view
    db.commit()
    assert g.houses_viewed == 5
    assert svc.check_access(db, taker, AREA).has_access is False


def test_counter_update_is_conditional(db, svc, taker, pool):
    result = svc.purchase(db, taker, _request(5))
    g = result.grant
    # Another request already used up the plan.
    db.execute(Grant.__table__.update().where(Grant.id == g.id).values(houses_viewed=5))
    db.commit()
    assert svc.record_view(db, g, result.pinned[0].listing.id) is False
    assert g.houses_viewed == 5


def test_racing_first_view_is_not_counted_twice(db, svc, taker, pool, monkeypatch):
    result = svc.purchase(db, taker, _request(5))
    g = result.grant
    first, second = result.pinned[0].listing.id, result.pinned[1].listing.id
    assert svc.record_view(db, g, first) is True
    db.commit()

    # Both requests passed the "already counted" check before either inserted its view row.
    monkeypatch.setattr(svc, "is_counted", lambda *args: False)
    assert svc.record_view(db, g, first) is False
    monkeypatch.undo()
    db.commit()
    assert g.houses_viewed == 1
    assert _rows(db, GrantView) == 1

    # The failed insert only rolled back its savepoint; the session keeps working.
    assert svc.record_view(db, g, second) is True
    db.commit()
    assert g.houses_viewed == 2


def test_check_access_requires_a_live_plan_for_the_area(db, svc, taker, pool):
    assert svc.check_access(db, taker, AREA).has_access is False
    assert svc.check_access(db, None, AREA).has_access is False

    g = svc.purchase(db, taker, _request(5)).grant
    status = svc.check_access(db, taker, "KORAMANGALA")
    assert status.has_access is True
    assert status.grant.id == g.id
    assert status.remaining == 5
    assert svc.check_access(db, taker, "Indiranagar").has_access is False
    assert svc.check_access(db, taker, "").has_access is False


def test_check_access_picks_the_most_recent_plan(db, svc, taker, pool, clock):
    svc.purchase(db, taker, _request(5))
    clock.advance(minutes=5)
    newer = svc.purchase(db, taker, _request(10)).grant
    assert svc.check_access(db, taker, AREA).grant.id == newer.id


def test_expiry_is_enforced_without_waiting_for_the_sweeper(db, svc, taker, pool, clock):
    g = svc.purchase(db, taker, _request(5)).grant
    clock.now = as_utc(g.valid_until) - dt.timedelta(seconds=1)
    assert svc.check_access(db, taker, AREA).has_access is True

    clock.now = as_utc(g.valid_until)
    assert svc.check_access(db, taker, AREA).has_access is False
    db.refresh(g)
    assert g.active is True
    assert g.status_at(clock()) == "expired"


def test_sweeper_deactivates_expired_plans_once(db, svc, taker, pool, clock):
    g = svc.purchase(db, taker, _request(5)).grant
    assert sweep_expired_grants(db, clock()) == 0

    clock.advance(days=g.duration_days, seconds=1)
    assert sweep_expired_grants(db, clock()) == 1
    db.commit()
    assert sweep_expired_grants(db, clock()) == 0
    db.commit()
    db.refresh(g)
    assert g.active is False
    assert svc.check_access(db, taker, AREA).has_access is False


def test_sweeper_leaves_live_plans_alone(db, svc, taker, pool, clock):
    short = svc.purchase(db, taker, _request(5)).grant
    long = svc.purchase(db, taker, _request(50)).grant
    clock.advance(days=short.duration_days + 1)
    assert sweep_expired_grants(db, clock()) == 1
    db.commit()
    db.refresh(short)
    db.refresh(long)
    assert (short.active, long.active) == (False, True)


def test_history_is_newest_first(db, svc, taker, pool, clock):
    first = svc.purchase(db, taker, _request(1)).grant
    clock.advance(hours=1)
    second = svc.purchase(db, taker, _request(2)).grant
    assert [g.id for g in svc.history(db, taker)] == [second.id, first.id]
    assert svc.pinned_count(db, first) == 1
