from datetime import datetime

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

import catalog
from auth import Principal
from context import BookingContext
from notifications import RecordingNotifier
from payments.gateway import MockGateway
from settings import Settings
from txn_manager import BookingTransactionManager

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 2, 1, 9, 0))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'bookings.db'}",
        stripe_webhook_secret=WEBHOOK_SECRET,
        jwt_secret=JWT_SECRET,
        transient_retry_backoff=0.0,
    )


@pytest.fixture
def ctx(settings, clock):
    context = BookingContext(settings, gateway=MockGateway(), notifier=RecordingNotifier(), clock=clock)
    context.init_storage()
    yield context
    context.close()


@pytest.fixture
def manager(ctx):
    return BookingTransactionManager(ctx)


@pytest.fixture
def vehicle(ctx):
    with ctx.db.session() as db:
        return catalog.add_vehicle(db, "Toyota Corolla", 50.0, owner_id="owner_1", vehicle_id="car_x")


@pytest.fixture
def renter():
    return Principal(id="user_1", role="user")


@pytest.fixture
def other_renter():
    return Principal(id="user_2", role="user")


@pytest.fixture
def admin():
    return Principal(id="admin_1", role="admin")


@pytest.fixture
def make_payload():
    def _make(vehicle_id="car_x", start="2025-03-01", end="2025-03-04", **overrides):
        payload = {
            "vehicle_id": vehicle_id,
            "start_date": start,
            "end_date": end,
            "pickup_location": "Downtown",
            "return_location": "Airport",
            "driver": {
                "name": "Jane Driver",
                "license_number": "D1234567",
                "license_expiry": "2030-01-01",
                "phone": "+15551234567",
                "age": 34,
            },
            "insurance": {"type": "basic", "cost": 10},
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def paid_booking(ctx, manager, vehicle, renter, make_payload):
    """A confirmed booking for 2025-03-01..04 with its succeeded payment."""
    from payments.checkout import apply_gateway_event, record_intent

    booking = manager.create_booking(renter, make_payload())
    checkout = record_intent(ctx, renter, booking.id)
    payment = apply_gateway_event(ctx, {"type": "succeeded", "gateway_id": checkout.payment.gateway_id})
    return manager.get_booking(renter, booking.id), payment


@pytest.fixture
def fail_next_commit(ctx):
    """Call the returned function to make the next session commit raise a lock timeout."""
    armed = []

    def before_commit(session):
        if armed:
            armed.pop()
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

    event.listen(ctx.db.SessionLocal, "before_commit", before_commit)
    yield lambda: armed.append(True)
    event.remove(ctx.db.SessionLocal, "before_commit", before_commit)
