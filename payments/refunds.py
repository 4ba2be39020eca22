import logging
from typing import Optional

from auth import Principal
from booking_schemas import RefundResult
from booking_state import validate_transition
from context import BookingContext
from errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from persistence import crud
from persistence.db import storage_errors
from txn_manager import transition

logger = logging.getLogger(__name__)

# float amounts are rounded to cents; compare with a half-cent tolerance
EPSILON = 0.005

# bookings that keep their status when fully refunded; only the money goes back
KEEP_STATUS_ON_REFUND = ("cancelled", "payment_failed")


def refundable_amount(payment) -> float:
    if payment.status != "succeeded":
        return 0.0
    return round(payment.amount - payment.refunded_amount, 2)


def refund(ctx: BookingContext, principal: Principal, payment_id: str, amount: float,
           reason: Optional[str] = None) -> RefundResult:
    """
    Refund part or all of a succeeded payment through the gateway.

    refunded_amount only grows and never passes amount. Once the booking's cumulative refund
    covers its total, the booking moves to `refunded` (a booking that was cancelled, or never
    got its payment accepted, keeps its status and only its payment status changes).
    """
    if principal is None or not principal.is_admin:
        raise PermissionDeniedError("Admin privileges required for refund")
    if amount is None or amount <= 0:
        raise ValidationError.single("amount", "Refund amount must be positive")
    amount = round(float(amount), 2)
    now = ctx.now()

    with ctx.db.session() as db, storage_errors():
        payment = crud.get_payment_by_id(db, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.status != "succeeded":
            raise InvalidTransitionError(payment.status, "refunded", reason="payment is not refundable")

        remaining = refundable_amount(payment)
        if amount > remaining + EPSILON:
            raise ValidationError.single("amount", f"Refund exceeds refundable amount {remaining:.2f}")

        booking = payment.booking
        booking_refund = round(booking.refund_amount + amount, 2)
        if booking_refund > booking.total_amount + EPSILON:
            raise ValidationError.single("amount", "Refund exceeds booking total")
        covers_booking = booking_refund >= booking.total_amount - EPSILON
        keeps_status = booking.status in KEEP_STATUS_ON_REFUND
        if covers_booking and not keeps_status:
            validate_transition(booking.status, "refunded")

        amount_minor = int(round(amount * 100))
        # stable across replays of this request until the refund is committed
        idempotency_key = f"refund:{payment.id}:{payment.version}:{amount_minor}"
        resp = ctx.gateway.refund(payment.gateway_id, amount_minor, reason, idempotency_key=idempotency_key)

        payment.refunded_amount = round(payment.refunded_amount + amount, 2)
        payment.refund_reason = reason
        if payment.refunded_amount >= payment.amount - EPSILON:
            payment.status = "refunded"
        booking.refund_amount = min(booking_refund, booking.total_amount)
        booking_event = None
        if covers_booking:
            if keeps_status:
                booking.payment_status = "refunded"
            else:
                transition(booking, "refunded", now)
                booking_event = "booking.refunded"

        db.commit()
        result = RefundResult(
            refund_id=resp.gateway_id,
            payment=crud.payment_to_pydantic(payment),
            booking=crud.model_to_pydantic(booking),
            fully_refunded=payment.status == "refunded",
        )

    logger.info("Refunded %.2f on payment %s (booking %s)", amount, payment_id, result.booking.id)
    if booking_event:
        ctx.notify(booking_event, {"booking_id": result.booking.id, "status": result.booking.status,
                                   "renter_id": result.booking.renter_id, "payment_id": payment_id})
    return result
