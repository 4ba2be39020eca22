import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

import pydantic
from sqlalchemy.orm import object_session

import catalog
import pricing
from auth import Principal
from booking_schemas import BookedInterval, BookingCreate, BookingRecord
from booking_state import check_renter_cancellation, validate_transition
from conflicts import booked_intervals, has_conflict
from context import BookingContext
from errors import (ConflictError, InvalidTransitionError, NotFoundError, PermissionDeniedError,
                    StaleStateError, UnavailableError, ValidationError)
from persistence import crud
from persistence.db import storage_errors
from persistence.models import BookingModel

logger = logging.getLogger(__name__)

# statuses an admin may set directly; payment-driven states only come from payment events/refunds
OVERRIDE_TARGETS = {"pending", "confirmed", "active", "completed", "cancelled"}


def parse_input(model, data):
    """Validate a raw dict against a pydantic input model, raising the core ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError.from_pydantic(exc)


def transition(booking: BookingModel, target: str, now: datetime, reason: Optional[str] = None) -> None:
    """
    Move a booking to `target`, applying the side effects of that state.
    Raises InvalidTransitionError and leaves the booking untouched if the move is not allowed.
    """
    validate_transition(booking.status, target)
    booking.status = target
    if target == "cancelled":
        booking.cancelled_at = now
        booking.cancellation_reason = reason
    elif target == "completed":
        booking.completed_at = now
    elif target == "confirmed":
        booking.payment_status = "paid"
    elif target == "payment_failed":
        booking.payment_status = "failed"
    elif target == "refunded":
        booking.payment_status = "refunded"
    elif target == "pending":
        booking.payment_status = "pending"


def check_version(booking: BookingModel, expected_version: Optional[int]) -> None:
    if expected_version is not None and booking.version != expected_version:
        raise StaleStateError(
            f"Booking {booking.id} is at version {booking.version}, expected {expected_version}")


class BookingTransactionManager:
    """
    Booking lifecycle coordinator: create -> (payment) -> confirm -> pickup -> return,
    with cancellation and admin overrides.

    Every operation runs in its own session and commits once. Creation and any change that
    re-occupies an interval run inside the per-vehicle critical section so the conflict check
    and the write cannot interleave with another request for the same vehicle.
    """

    def __init__(self, ctx: BookingContext):
        self.ctx = ctx

    # ---- helpers ----

    @staticmethod
    def _require_admin(principal: Optional[Principal]):
        if principal is None or not principal.is_admin:
            raise PermissionDeniedError("Admin privileges required")

    @staticmethod
    def _require_owner_or_admin(principal: Optional[Principal], booking: BookingModel):
        if principal is None:
            raise PermissionDeniedError("Authentication required")
        if not principal.is_admin and booking.renter_id != principal.id:
            raise PermissionDeniedError("Not authorized to access this booking")

    @staticmethod
    def _load(db, booking_id: str) -> BookingModel:
        booking = crud.get_booking_by_id(db, booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    def _peek(self, booking_id: str):
        """(status, vehicle_id) of a booking, read before taking the vehicle lock."""
        with self.ctx.db.session() as db, storage_errors():
            booking = self._load(db, booking_id)
            return booking.status, booking.vehicle_id

    def _apply(self, booking_id: str, target: str, expected_version: Optional[int] = None,
               check: Optional[Callable[[BookingModel], None]] = None,
               reason: Optional[str] = None, note: Optional[str] = None) -> BookingRecord:
        now = self.ctx.now()
        with self.ctx.db.session() as db, storage_errors():
            booking = self._load(db, booking_id)
            check_version(booking, expected_version)
            if check:
                check(booking)
            transition(booking, target, now, reason=reason)
            if note is not None:
                booking.admin_note = note
            db.commit()
            record = crud.model_to_pydantic(booking)
        self.ctx.notify(f"booking.{target}", {"booking_id": record.id, "status": record.status,
                                              "renter_id": record.renter_id})
        return record

    # ---- creation ----

    def create_booking(self, principal: Optional[Principal],
                       request: Union[BookingCreate, dict]) -> BookingRecord:
        """
        1. validate input  2. load vehicle  3. conflict check  4. price  5. persist pending
        6. emit booking.created. Steps 3-5 run under the vehicle's lock.
        """
        request = parse_input(BookingCreate, request)
        now = self.ctx.now()
        if request.start_date < now:
            raise ValidationError.single("start_date", "Start date cannot be in the past")

        settings = self.ctx.settings
        with self.ctx.vehicle_locks.hold(request.vehicle_id):
            with self.ctx.db.session() as db, storage_errors():
                vehicle = catalog.find_bookable(db, request.vehicle_id, for_update=True)
                if not catalog.is_bookable(vehicle):
                    raise UnavailableError("Car is not available for booking")
                if has_conflict(db, vehicle.id, request.start_date, request.end_date):
                    logger.info("Booking conflict for vehicle %s %s..%s", vehicle.id,
                                request.start_date.isoformat(), request.end_date.isoformat())
                    raise ConflictError("Car is already booked for the selected dates")

                quote = pricing.price(catalog.daily_rate(vehicle), request.start_date, request.end_date,
                                      request.insurance.type, settings.insurance_costs)
                booking = BookingModel(
                    vehicle_id=vehicle.id,
                    renter_id=principal.id if principal else None,
                    start_date=request.start_date,
                    end_date=request.end_date,
                    total_days=quote.total_days,
                    total_amount=quote.total_amount,
                    status="pending",
                    payment_status="pending",
                    pickup_location=request.pickup_location,
                    return_location=request.return_location,
                    driver_name=request.driver.name,
                    driver_license_number=request.driver.license_number,
                    driver_license_expiry=request.driver.license_expiry,
                    driver_phone=request.driver.phone,
                    driver_age=request.driver.age,
                    insurance_type=request.insurance.type,
                    insurance_cost=quote.insurance_cost,
                    special_requests=request.special_requests,
                    refund_amount=0.0,
                )
                db.add(booking)
                db.commit()
                record = crud.model_to_pydantic(booking)

        logger.info("Created booking %s for vehicle %s (%d days, %.2f)", record.id, record.vehicle_id,
                    record.total_days, record.total_amount)
        self.ctx.notify("booking.created", {"booking_id": record.id, "status": record.status,
                                            "renter_id": record.renter_id,
                                            "total_amount": record.total_amount})
        return record

    # ---- reads ----

    def get_booking(self, principal: Optional[Principal], booking_id: str) -> BookingRecord:
        with self.ctx.db.session() as db, storage_errors():
            booking = self._load(db, booking_id)
            self._require_owner_or_admin(principal, booking)
            return crud.model_to_pydantic(booking)

    def booked_dates(self, vehicle_id: str) -> List[BookedInterval]:
        with self.ctx.db.session() as db, storage_errors():
            catalog.find_bookable(db, vehicle_id)
            return booked_intervals(db, vehicle_id)

    # ---- transitions ----

    def cancel_booking(self, principal: Optional[Principal], booking_id: str, reason: Optional[str] = None,
                       expected_version: Optional[int] = None) -> BookingRecord:
        now = self.ctx.now()
        window = self.ctx.settings.cancellation_window_hours

        def check(booking):
            self._require_owner_or_admin(principal, booking)
            if not principal.is_admin:
                check_renter_cancellation(booking.status, booking.start_date, now, window)

        return self._apply(booking_id, "cancelled", expected_version=expected_version, check=check,
                           reason=reason)

    def mark_active(self, principal: Optional[Principal], booking_id: str,
                    expected_version: Optional[int] = None) -> BookingRecord:
        """Pickup happened."""
        self._require_admin(principal)
        return self._apply(booking_id, "active", expected_version=expected_version)

    def mark_completed(self, principal: Optional[Principal], booking_id: str,
                       expected_version: Optional[int] = None) -> BookingRecord:
        """Vehicle returned."""
        self._require_admin(principal)
        return self._apply(booking_id, "completed", expected_version=expected_version)

    def override_status(self, principal: Optional[Principal], booking_id: str, status: str,
                        note: Optional[str] = None, expected_version: Optional[int] = None) -> BookingRecord:
        """
        Admin status change. Still bound by the transition table; only the renter
        cancellation window is waived. Re-opening a booking re-checks its interval.
        """
        self._require_admin(principal)
        if status not in OVERRIDE_TARGETS:
            current, _ = self._peek(booking_id)
            raise InvalidTransitionError(current, status, reason="driven by payment events only")
        if status != "pending":
            return self._apply(booking_id, status, expected_version=expected_version,
                               reason=note if status == "cancelled" else None, note=note)

        _, vehicle_id = self._peek(booking_id)

        def check(booking):
            if has_conflict(object_session(booking), booking.vehicle_id, booking.start_date, booking.end_date,
                            exclude_booking_id=booking.id):
                raise ConflictError("Car is already booked for the selected dates")

        with self.ctx.vehicle_locks.hold(vehicle_id):
            return self._apply(booking_id, "pending", expected_version=expected_version, check=check,
                               note=note)

    def reschedule(self, principal: Optional[Principal], booking_id: str, start_date: datetime,
                   end_date: datetime, expected_version: Optional[int] = None) -> BookingRecord:
        """Change the dates of a pending booking; the price is recomputed from scratch."""
        if end_date <= start_date:
            raise ValidationError.single("end_date", "End date must be after start date")
        if start_date < self.ctx.now():
            raise ValidationError.single("start_date", "Start date cannot be in the past")

        _, vehicle_id = self._peek(booking_id)

        with self.ctx.vehicle_locks.hold(vehicle_id):
            with self.ctx.db.session() as db, storage_errors():
                booking = self._load(db, booking_id)
                self._require_owner_or_admin(principal, booking)
                check_version(booking, expected_version)
                if booking.status != "pending":
                    raise InvalidTransitionError(booking.status, "rescheduled",
                                                 reason="only pending bookings can change dates")
                vehicle = catalog.find_bookable(db, booking.vehicle_id, for_update=True)
                if has_conflict(db, vehicle.id, start_date, end_date, exclude_booking_id=booking.id):
                    raise ConflictError("Car is already booked for the selected dates")
                quote = pricing.price(catalog.daily_rate(vehicle), start_date, end_date,
                                      booking.insurance_type, self.ctx.settings.insurance_costs)
                booking.start_date = start_date
                booking.end_date = end_date
                booking.total_days = quote.total_days
                booking.insurance_cost = quote.insurance_cost
                booking.total_amount = quote.total_amount
                db.commit()
                record = crud.model_to_pydantic(booking)

        self.ctx.notify("booking.rescheduled", {"booking_id": record.id, "status": record.status,
                                                "renter_id": record.renter_id})
        return record
