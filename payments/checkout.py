import logging
from typing import Optional, Union

from auth import Principal
from booking_schemas import CheckoutSession, GatewayEvent, PaymentRecord
from conflicts import has_conflict
from context import BookingContext
from errors import ConflictError, InvalidTransitionError, NotFoundError, PermissionDeniedError
from persistence import crud
from persistence.db import storage_errors
from persistence.models import PaymentModel
from txn_manager import parse_input, transition

logger = logging.getLogger(__name__)

OPEN_PAYMENT_STATUSES = ("pending", "processing")


def _booking_vehicle(ctx: BookingContext, booking_id: str) -> str:
    with ctx.db.session() as db, storage_errors():
        booking = crud.get_booking_by_id(db, booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking.vehicle_id


def record_intent(ctx: BookingContext, principal: Principal, booking_id: str,
                  currency: Optional[str] = None) -> CheckoutSession:
    """
    Start a checkout attempt for a pending booking: create a PaymentIntent at the gateway
    and record a pending Payment carrying its id. A booking whose last attempt failed goes
    back to pending first, provided its dates are still free.
    """
    now = ctx.now()
    vehicle_id = _booking_vehicle(ctx, booking_id)
    with ctx.vehicle_locks.hold(vehicle_id):
        with ctx.db.session() as db, storage_errors():
            booking = crud.get_booking_by_id(db, booking_id)
            if principal is None or (booking.renter_id != principal.id and not principal.is_admin):
                raise PermissionDeniedError("Unauthorized to pay for this booking")

            if booking.status == "payment_failed":
                if has_conflict(db, booking.vehicle_id, booking.start_date, booking.end_date,
                                exclude_booking_id=booking.id):
                    raise ConflictError("Car is already booked for the selected dates")
                transition(booking, "pending", now)
            elif booking.status != "pending":
                raise InvalidTransitionError(booking.status, "pending",
                                             reason="only pending bookings can be paid")

            currency = (currency or ctx.settings.default_currency).lower()
            description = f"Car rental payment for booking {booking.id} ({booking.total_days} days)"
            metadata = {
                "booking_id": booking.id,
                "vehicle_id": booking.vehicle_id,
                "user_id": principal.id,
                "start_date": booking.start_date.isoformat(),
                "end_date": booking.end_date.isoformat(),
            }
            # keyed on the attempt number: a replay after a failed commit gets the same intent back
            attempt = len(crud.payments_for_booking(db, booking.id)) + 1
            idempotency_key = f"intent:{booking.id}:{attempt}"
            # gateway expects the amount in minor units
            resp = ctx.gateway.create_intent(int(round(booking.total_amount * 100)), currency,
                                             metadata, description, idempotency_key=idempotency_key)

            payment = PaymentModel(
                booking_id=booking.id,
                payer_id=principal.id,
                amount=booking.total_amount,
                currency=currency,
                status="pending",
                gateway_id=resp.gateway_id,
                client_secret=resp.client_secret,
                description=description,
                refunded_amount=0.0,
            )
            db.add(payment)
            db.commit()
            record = crud.payment_to_pydantic(payment)

    logger.info("Recorded payment %s (%s) for booking %s", record.id, record.gateway_id, booking_id)
    return CheckoutSession(payment=record, client_secret=record.client_secret)


def apply_gateway_event(ctx: BookingContext, event: Union[GatewayEvent, dict]) -> Optional[PaymentRecord]:
    """
    Apply an asynchronous payment outcome. Correlation is by gateway id (one payment attempt),
    never by booking. Unknown ids and repeated deliveries are no-ops; returns the payment
    record, or None if the id is unknown.
    """
    event = parse_input(GatewayEvent, event)
    now = ctx.now()
    target = "succeeded" if event.type == "succeeded" else "failed"

    with ctx.db.session() as db, storage_errors():
        payment = crud.get_payment_by_gateway_id(db, event.gateway_id)
        if payment is None:
            logger.warning("Ignoring %s event for unknown payment intent %s", event.type, event.gateway_id)
            return None
        vehicle_id = payment.booking.vehicle_id

    booking_event = None
    with ctx.vehicle_locks.hold(vehicle_id):
        with ctx.db.session() as db, storage_errors():
            payment = crud.get_payment_by_gateway_id(db, event.gateway_id)
            if payment.status == target:
                logger.info("Duplicate %s event for payment %s", event.type, payment.id)
                return crud.payment_to_pydantic(payment)
            # a failed intent can still succeed later, e.g. the customer retried with another card
            late_success = target == "succeeded" and payment.status == "failed"
            if payment.status not in OPEN_PAYMENT_STATUSES and not late_success:
                logger.warning("Ignoring %s event for payment %s in status %s",
                               event.type, payment.id, payment.status)
                return crud.payment_to_pydantic(payment)

            booking = payment.booking
            if target == "succeeded":
                payment.status = "succeeded"
                payment.completed_at = now
                if booking.status == "payment_failed":
                    # money arrived after the booking gave up on payment; reclaim the dates if still free
                    if has_conflict(db, booking.vehicle_id, booking.start_date, booking.end_date,
                                    exclude_booking_id=booking.id):
                        logger.error("Payment %s succeeded but booking %s dates were taken; refund required",
                                     payment.id, booking.id)
                    else:
                        transition(booking, "pending", now)
                if booking.status == "pending":
                    transition(booking, "confirmed", now)
                    booking_event = "booking.confirmed"
                elif booking.status != "confirmed":
                    logger.warning("Payment %s succeeded for booking %s in status %s",
                                   payment.id, booking.id, booking.status)
            else:
                payment.status = "failed"
                payment.failed_at = now
                payment.failure_reason = event.failure_reason
                others_open = [p for p in crud.payments_for_booking(db, booking.id)
                               if p.id != payment.id and p.status in OPEN_PAYMENT_STATUSES]
                if booking.status == "pending" and not others_open:
                    transition(booking, "payment_failed", now)
                    booking_event = "booking.payment_failed"

            db.commit()
            record = crud.payment_to_pydantic(payment)
            booking_id, renter_id, booking_status = booking.id, booking.renter_id, booking.status

    if booking_event:
        ctx.notify(booking_event, {"booking_id": booking_id, "status": booking_status,
                                   "renter_id": renter_id, "payment_id": record.id})
    return record
