"""
Vehicle catalog lookups used by the booking core.

Listing mutation (availability / soft delete) belongs to owners and admins; the helpers here
exist for seeding and for the admin surface, never for the booking flow itself.
"""
from typing import Optional

from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from persistence import crud
from persistence.models import VehicleModel


def find_bookable(db: Session, vehicle_id: str, for_update: bool = False) -> VehicleModel:
    """
    Return the vehicle if it exists. Callers still have to check is_bookable() before
    accepting a new booking.
    """
    vehicle = crud.get_vehicle(db, vehicle_id, for_update=for_update)
    if vehicle is None:
        raise NotFoundError("Vehicle", vehicle_id)
    return vehicle


def is_bookable(vehicle: VehicleModel) -> bool:
    return bool(vehicle.active and vehicle.availability)


def daily_rate(vehicle: VehicleModel) -> float:
    return float(vehicle.daily_rate)


def add_vehicle(db: Session, name: str, daily_rate: float, owner_id: Optional[str] = None,
                availability: bool = True, vehicle_id: Optional[str] = None) -> VehicleModel:
    if daily_rate < 0:
        raise ValidationError.single("daily_rate", "Price cannot be negative")
    vehicle = VehicleModel(name=name, daily_rate=daily_rate, owner_id=owner_id,
                           availability=availability, active=True)
    if vehicle_id:
        vehicle.id = vehicle_id
    db.add(vehicle)
    db.commit()
    db.refresh(vehicle)
    return vehicle


def set_availability(db: Session, vehicle_id: str, availability: bool) -> VehicleModel:
    vehicle = find_bookable(db, vehicle_id)
    vehicle.availability = availability
    db.commit()
    return vehicle


def deactivate(db: Session, vehicle_id: str) -> VehicleModel:
    # soft delete: existing bookings keep pointing at the row
    vehicle = find_bookable(db, vehicle_id)
    vehicle.active = False
    db.commit()
    return vehicle
