"""
Run this script to see a full mocked booking flow:
 - list a car at $50/day
 - create a booking (priced from dates + insurance tier)
 - try an overlapping booking (rejected) and a touching one (accepted)
 - start checkout and deliver the gateway's "succeeded" event twice
 - renter cancellation inside the 24h window (rejected), then a full refund
"""
import os
import tempfile
from datetime import datetime

import catalog
from auth import Principal
from booking_schemas import GatewayEvent
from context import BookingContext
from errors import ConflictError, InvalidTransitionError
from notifications import RecordingNotifier
from payments.checkout import apply_gateway_event, record_intent
from payments.gateway import MockGateway
from payments.refunds import refund
from settings import Settings
from txn_manager import BookingTransactionManager


def booking_payload(vehicle_id: str, start: str, end: str) -> dict:
    return {
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
        "insurance": {"type": "basic"},
    }


def main(database_url: str = None) -> dict:
    if database_url is None:
        database_url = "sqlite:///" + os.path.join(tempfile.mkdtemp(), "demo.db")
    clock = {"now": datetime(2025, 2, 1, 9, 0)}
    ctx = BookingContext(Settings(database_url=database_url), gateway=MockGateway(),
                         notifier=RecordingNotifier(), clock=lambda: clock["now"])
    ctx.init_storage()
    manager = BookingTransactionManager(ctx)
    renter = Principal(id="user_123", role="user")
    admin = Principal(id="admin_1", role="admin")

    with ctx.db.session() as db:
        car = catalog.add_vehicle(db, "Toyota Corolla", 50.0, owner_id="owner_1")

    print("=== Create phase ===")
    booking = manager.create_booking(renter, booking_payload(car.id, "2025-03-01", "2025-03-04"))
    print(f"- {booking.id}: status={booking.status}, days={booking.total_days}, total={booking.total_amount}")

    try:
        manager.create_booking(renter, booking_payload(car.id, "2025-03-03", "2025-03-05"))
    except ConflictError as exc:
        print(f"- overlapping request rejected: {exc.message}")
    touching = manager.create_booking(renter, booking_payload(car.id, "2025-03-04", "2025-03-06"))
    print(f"- touching booking accepted: {touching.id}")

    print("\n=== Payment phase ===")
    checkout = record_intent(ctx, renter, booking.id)
    event = GatewayEvent(type="succeeded", gateway_id=checkout.payment.gateway_id)
    apply_gateway_event(ctx, event)
    payment = apply_gateway_event(ctx, event)  # redelivery is a no-op
    booking = manager.get_booking(renter, booking.id)
    print(f"- payment {payment.id}: {payment.status}; booking status={booking.status}")

    print("\n=== Cancellation / refund phase ===")
    clock["now"] = datetime(2025, 2, 28, 22, 0)
    try:
        manager.cancel_booking(renter, booking.id, reason="plans changed")
    except InvalidTransitionError as exc:
        print(f"- renter cancellation rejected: {exc.message}")
    result = refund(ctx, admin, payment.id, payment.amount, reason="requested_by_customer")
    print(f"- refunded {result.payment.refunded_amount}; payment={result.payment.status}, "
          f"booking={result.booking.status}")

    print("\nNotifications:", ", ".join(ctx.notifier.names()))
    ctx.close()
    return {
        "booking_status": result.booking.status,
        "payment_status": result.payment.status,
        "notifications": ctx.notifier.names(),
    }


if __name__ == "__main__":
    main()
