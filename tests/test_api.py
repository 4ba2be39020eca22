import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from app import create_app
from auth import create_token
from errors import TransientError

from conftest import JWT_SECRET, WEBHOOK_SECRET


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"),
                         hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, intent_id: str, **extra) -> str:
    obj = {"id": intent_id, "object": "payment_intent"}
    obj.update(extra)
    return json.dumps({"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}})


@pytest.fixture
def client(ctx):
    return TestClient(create_app(ctx))


@pytest.fixture
def renter_headers():
    return {"Authorization": f"Bearer {create_token('user_1', 'user', JWT_SECRET)}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_token('admin_1', 'admin', JWT_SECRET)}"}


def test_booking_requires_token(client, vehicle, make_payload):
    resp = client.post("/api/bookings", json=make_payload())
    assert resp.status_code == 401
    resp = client.post("/api/bookings", json=make_payload(), headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401


def test_create_booking_and_error_codes(client, vehicle, make_payload, renter_headers):
    resp = client.post("/api/bookings", json=make_payload(), headers=renter_headers)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["total_days"] == 3
    assert body["total_amount"] == 160.0

    resp = client.post("/api/bookings", json=make_payload(start="2025-03-03", end="2025-03-05"),
                       headers=renter_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "date_conflict"

    resp = client.post("/api/bookings", json=make_payload(vehicle_id="ghost"), headers=renter_headers)
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"

    bad = make_payload()
    bad["driver"]["age"] = 12
    resp = client.post("/api/bookings", json=bad, headers=renter_headers)
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"
    assert any(e["field"].endswith("age") for e in resp.json()["errors"])


def test_unavailable_vehicle_has_its_own_code(ctx, client, vehicle, make_payload, renter_headers):
    import catalog

    with ctx.db.session() as db:
        catalog.set_availability(db, vehicle.id, False)
    resp = client.post("/api/bookings", json=make_payload(), headers=renter_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "vehicle_unavailable"


def test_checkout_webhook_and_cancel_flow(ctx, client, clock, vehicle, make_payload, renter_headers,
                                          admin_headers):
    booking = client.post("/api/bookings", json=make_payload(), headers=renter_headers).json()

    resp = client.post("/api/payments/create-session", json={"booking_id": booking["id"]},
                       headers=renter_headers)
    assert resp.status_code == 200
    intent_id = resp.json()["payment"]["gateway_id"]

    payload = stripe_event("payment_intent.succeeded", intent_id)
    for _ in range(2):
        resp = client.post("/webhook/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})
        assert resp.status_code == 200
        assert resp.json()["payment_status"] == "succeeded"

    resp = client.get(f"/api/bookings/{booking['id']}", headers=renter_headers)
    assert resp.json()["status"] == "confirmed"

    from datetime import datetime
    clock.now = datetime(2025, 2, 28, 22, 0)
    resp = client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "sick"},
                       headers=renter_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_transition"
    assert resp.json()["current"] == "confirmed"

    resp = client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "sick"},
                       headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancelled_at"] is not None


def test_bad_signature_is_rejected_without_state_change(ctx, client, manager, vehicle, renter, make_payload):
    from payments.checkout import record_intent

    booking = manager.create_booking(renter, make_payload())
    checkout = record_intent(ctx, renter, booking.id)
    payload = stripe_event("payment_intent.succeeded", checkout.payment.gateway_id)

    resp = client.post("/webhook/stripe", content=payload,
                       headers={"Stripe-Signature": sign(payload, secret="whsec_wrong")})
    assert resp.status_code == 400
    assert resp.json()["code"] == "gateway_verification_failed"

    resp = client.post("/webhook/stripe", content=payload)
    assert resp.status_code == 400

    assert manager.get_booking(renter, booking.id).status == "pending"


def test_payment_failed_webhook(ctx, client, manager, vehicle, renter, make_payload):
    from payments.checkout import record_intent

    booking = manager.create_booking(renter, make_payload())
    checkout = record_intent(ctx, renter, booking.id)
    payload = stripe_event("payment_intent.payment_failed", checkout.payment.gateway_id,
                           last_payment_error={"message": "Your card was declined."})
    resp = client.post("/webhook/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.json()["payment_status"] == "failed"
    assert manager.get_booking(renter, booking.id).status == "payment_failed"


def test_unhandled_and_unknown_events_are_acknowledged(client, vehicle):
    payload = stripe_event("charge.refunded", "ch_1")
    resp = client.post("/webhook/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.json() == {"received": True, "handled": False}

    payload = stripe_event("payment_intent.succeeded", "pi_never_seen")
    resp = client.post("/webhook/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.json()["handled"] is False


def test_refund_endpoint_is_admin_only(ctx, client, paid_booking, renter_headers, admin_headers):
    booking, payment = paid_booking
    body = {"payment_id": payment.id, "amount": 160.0, "reason": "requested_by_customer"}
    assert client.post("/api/payments/refund", json=body, headers=renter_headers).status_code == 403
    resp = client.post("/api/payments/refund", json=body, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["booking"]["status"] == "refunded"
    assert resp.json()["payment"]["refunded_amount"] == 160.0


def test_transient_gateway_failure_is_retried(ctx, client, vehicle, make_payload, renter_headers):
    booking = client.post("/api/bookings", json=make_payload(), headers=renter_headers).json()
    ctx.gateway.fail_next_with = TransientError("gateway timeout")
    resp = client.post("/api/payments/create-session", json={"booking_id": booking["id"]},
                       headers=renter_headers)
    assert resp.status_code == 200
    assert resp.json()["payment"]["status"] == "pending"


def test_pickup_return_and_booked_dates(client, paid_booking, admin_headers, renter_headers):
    booking, _ = paid_booking
    assert client.post(f"/api/bookings/{booking.id}/pickup", headers=renter_headers).status_code == 403
    assert client.post(f"/api/bookings/{booking.id}/pickup", headers=admin_headers).json()["status"] == "active"
    assert client.post(f"/api/bookings/{booking.id}/return", headers=admin_headers).json()["status"] == "completed"

    resp = client.get(f"/api/vehicles/{booking.vehicle_id}/booked-dates")
    assert resp.status_code == 200
    assert resp.json()["intervals"][0]["booking_id"] == booking.id


def test_health(client):
    assert client.get("/health").json() == {"backend": "running", "database": "connected"}


def test_refund_retried_after_storage_timeout_hits_gateway_once(ctx, client, paid_booking, admin_headers,
                                                                fail_next_commit):
    booking, payment = paid_booking
    fail_next_commit()
    resp = client.post("/api/payments/refund", json={"payment_id": payment.id, "amount": 50.0},
                       headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["payment"]["refunded_amount"] == 50.0
    assert [r["amount"] for r in ctx.gateway.refunds] == [5000]


def test_signed_event_without_object_id_is_acknowledged(client, vehicle):
    payload = json.dumps({"id": "evt_2", "type": "payment_intent.succeeded", "data": {"object": {}}})
    resp = client.post("/webhook/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "handled": False}
