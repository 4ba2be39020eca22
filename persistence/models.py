import uuid
from datetime import datetime, timezone

from sqlalchemy import (Column, Integer, String, Float, Text, Boolean, DateTime, ForeignKey,
                        CheckConstraint, Index)
from sqlalchemy.orm import relationship
from .db import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class VehicleModel(Base):
    __tablename__ = "vehicles"

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_id = Column(String, index=True, nullable=True)
    name = Column(String(100), nullable=False)
    daily_rate = Column(Float, nullable=False)
    # listing flags; per-date availability is derived from bookings
    availability = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    bookings = relationship("BookingModel", back_populates="vehicle")

    __table_args__ = (
        CheckConstraint("daily_rate >= 0", name="check_vehicle_daily_rate_non_negative"),
    )


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(32), primary_key=True, default=_new_id)
    vehicle_id = Column(String(32), ForeignKey("vehicles.id"), nullable=False, index=True)
    renter_id = Column(String, index=True, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    total_days = Column(Integer, nullable=False)
    total_amount = Column(Float, nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    payment_status = Column(String(32), nullable=False, default="pending")
    pickup_location = Column(String, nullable=False)
    return_location = Column(String, nullable=False)

    # driver sub-record
    driver_name = Column(String, nullable=False)
    driver_license_number = Column(String, nullable=False)
    driver_license_expiry = Column(DateTime, nullable=False)
    driver_phone = Column(String, nullable=False)
    driver_age = Column(Integer, nullable=False)

    # insurance sub-record
    insurance_type = Column(String(16), nullable=False, default="basic")
    insurance_cost = Column(Float, nullable=False, default=0.0)

    special_requests = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    admin_note = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    refund_amount = Column(Float, nullable=False, default=0.0)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    vehicle = relationship("VehicleModel", back_populates="bookings")
    payments = relationship("PaymentModel", back_populates="booking")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_bookings_vehicle_dates", "vehicle_id", "start_date", "end_date"),
        Index("ix_bookings_status_start", "status", "start_date"),
        CheckConstraint("end_date > start_date", name="check_booking_dates_ordered"),
        CheckConstraint("total_days >= 1", name="check_booking_total_days"),
        CheckConstraint("refund_amount >= 0 AND refund_amount <= total_amount",
                        name="check_booking_refund_bounds"),
    )


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(String(32), primary_key=True, default=_new_id)
    booking_id = Column(String(32), ForeignKey("bookings.id"), nullable=False, index=True)
    payer_id = Column(String, index=True, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False, default="usd")
    status = Column(String(32), nullable=False, default="pending")
    gateway_id = Column(String, unique=True, index=True, nullable=True)
    client_secret = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    refunded_amount = Column(Float, nullable=False, default=0.0)
    refund_reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    booking = relationship("BookingModel", back_populates="payments")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("amount >= 0", name="check_payment_amount_non_negative"),
        CheckConstraint("refunded_amount >= 0 AND refunded_amount <= amount",
                        name="check_payment_refund_bounds"),
    )
