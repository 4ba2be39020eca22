from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_schemas import BookingRecord, DriverInfo, Insurance, PaymentRecord, VehicleRecord
from .models import BookingModel, PaymentModel, VehicleModel


def get_vehicle(db: Session, vehicle_id: str, for_update: bool = False) -> Optional[VehicleModel]:
    stmt = select(VehicleModel).where(VehicleModel.id == vehicle_id)
    if for_update:
        # row lock on databases that support it; SQLite ignores it
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def get_booking_by_id(db: Session, booking_id: str) -> Optional[BookingModel]:
    return db.get(BookingModel, booking_id)


def get_payment_by_id(db: Session, payment_id: str) -> Optional[PaymentModel]:
    return db.get(PaymentModel, payment_id)


def get_payment_by_gateway_id(db: Session, gateway_id: str) -> Optional[PaymentModel]:
    stmt = select(PaymentModel).where(PaymentModel.gateway_id == gateway_id)
    return db.execute(stmt).scalar_one_or_none()


def payments_for_booking(db: Session, booking_id: str) -> List[PaymentModel]:
    stmt = (select(PaymentModel)
            .where(PaymentModel.booking_id == booking_id)
            .order_by(PaymentModel.created_at))
    return list(db.execute(stmt).scalars())


def overlapping_bookings(db: Session, vehicle_id: str, start, end, statuses,
                         exclude_booking_id: Optional[str] = None) -> List[BookingModel]:
    """Bookings for the vehicle in one of `statuses` whose [start, end) overlaps [start, end)."""
    stmt = select(BookingModel).where(
        BookingModel.vehicle_id == vehicle_id,
        BookingModel.status.in_(list(statuses)),
        BookingModel.start_date < end,
        BookingModel.end_date > start,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(BookingModel.id != exclude_booking_id)
    return list(db.execute(stmt).scalars())


def bookings_for_vehicle(db: Session, vehicle_id: str, exclude_statuses=()) -> List[BookingModel]:
    stmt = select(BookingModel).where(BookingModel.vehicle_id == vehicle_id)
    if exclude_statuses:
        stmt = stmt.where(BookingModel.status.not_in(list(exclude_statuses)))
    return list(db.execute(stmt.order_by(BookingModel.start_date)).scalars())


def vehicle_to_pydantic(db_vehicle: VehicleModel) -> VehicleRecord:
    return VehicleRecord.model_validate(db_vehicle)


def payment_to_pydantic(db_payment: PaymentModel) -> PaymentRecord:
    return PaymentRecord.model_validate(db_payment)


def model_to_pydantic(db_booking: BookingModel) -> BookingRecord:
    """Convert a BookingModel (flat columns) to the nested BookingRecord."""
    return BookingRecord(
        id=db_booking.id,
        vehicle_id=db_booking.vehicle_id,
        renter_id=db_booking.renter_id,
        start_date=db_booking.start_date,
        end_date=db_booking.end_date,
        total_days=db_booking.total_days,
        total_amount=db_booking.total_amount,
        status=db_booking.status,
        payment_status=db_booking.payment_status,
        pickup_location=db_booking.pickup_location,
        return_location=db_booking.return_location,
        driver=DriverInfo.model_construct(
            name=db_booking.driver_name,
            license_number=db_booking.driver_license_number,
            license_expiry=db_booking.driver_license_expiry,
            phone=db_booking.driver_phone,
            age=db_booking.driver_age,
        ),
        insurance=Insurance(type=db_booking.insurance_type, cost=db_booking.insurance_cost),
        special_requests=db_booking.special_requests,
        cancellation_reason=db_booking.cancellation_reason,
        admin_note=db_booking.admin_note,
        cancelled_at=db_booking.cancelled_at,
        completed_at=db_booking.completed_at,
        refund_amount=db_booking.refund_amount or 0.0,
        version=db_booking.version,
    )
