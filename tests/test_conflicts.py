from datetime import datetime

import pytest

from conflicts import booked_intervals, has_conflict
from persistence.models import BookingModel


def _add_booking(db, status, start, end, booking_id=None):
    booking = BookingModel(
        vehicle_id="car_x", renter_id="user_1", start_date=start, end_date=end,
        total_days=(end - start).days or 1, total_amount=100.0, status=status,
        pickup_location="A", return_location="B", driver_name="Jane Driver",
        driver_license_number="D1", driver_license_expiry=datetime(2030, 1, 1),
        driver_phone="+15551234567", driver_age=30, insurance_type="basic", insurance_cost=10.0,
        refund_amount=0.0,
    )
    if booking_id:
        booking.id = booking_id
    db.add(booking)
    db.commit()
    return booking


@pytest.fixture
def db(ctx, vehicle):
    with ctx.db.session() as session:
        yield session


def test_overlap_is_detected(db):
    _add_booking(db, "confirmed", datetime(2025, 3, 1), datetime(2025, 3, 4))
    assert has_conflict(db, "car_x", datetime(2025, 3, 3), datetime(2025, 3, 5))
    assert has_conflict(db, "car_x", datetime(2025, 2, 27), datetime(2025, 3, 10))


def test_touching_intervals_do_not_conflict(db):
    _add_booking(db, "pending", datetime(2025, 3, 1), datetime(2025, 3, 4))
    assert not has_conflict(db, "car_x", datetime(2025, 3, 4), datetime(2025, 3, 6))
    assert not has_conflict(db, "car_x", datetime(2025, 2, 26), datetime(2025, 3, 1))


@pytest.mark.parametrize("status", ["cancelled", "completed", "payment_failed", "refunded"])
def test_non_blocking_statuses_are_ignored(db, status):
    _add_booking(db, status, datetime(2025, 3, 1), datetime(2025, 3, 4))
    assert not has_conflict(db, "car_x", datetime(2025, 3, 2), datetime(2025, 3, 3))


def test_excluded_booking_does_not_conflict_with_itself(db):
    _add_booking(db, "pending", datetime(2025, 3, 1), datetime(2025, 3, 4), booking_id="b1")
    assert not has_conflict(db, "car_x", datetime(2025, 3, 2), datetime(2025, 3, 5), exclude_booking_id="b1")


def test_malformed_interval_counts_as_conflict(db):
    assert has_conflict(db, "car_x", datetime(2025, 3, 4), datetime(2025, 3, 4))
    assert has_conflict(db, "car_x", datetime(2025, 3, 5), datetime(2025, 3, 4))


def test_other_vehicles_are_independent(db):
    _add_booking(db, "active", datetime(2025, 3, 1), datetime(2025, 3, 4))
    assert not has_conflict(db, "car_y", datetime(2025, 3, 1), datetime(2025, 3, 4))


def test_booked_intervals_skip_cancelled_and_are_ordered(db):
    _add_booking(db, "confirmed", datetime(2025, 3, 10), datetime(2025, 3, 12))
    _add_booking(db, "cancelled", datetime(2025, 3, 5), datetime(2025, 3, 6))
    _add_booking(db, "pending", datetime(2025, 3, 1), datetime(2025, 3, 4))
    intervals = booked_intervals(db, "car_x")
    assert [i.status for i in intervals] == ["pending", "confirmed"]
    assert intervals[0].start_date == datetime(2025, 3, 1)
