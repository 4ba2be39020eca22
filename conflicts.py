from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from booking_schemas import BookedInterval
from persistence import crud

# statuses that occupy a vehicle for their [start_date, end_date) interval
BLOCKING_STATUSES = ("pending", "confirmed", "active")


def has_conflict(db: Session, vehicle_id: str, start_date: datetime, end_date: datetime,
                 exclude_booking_id: Optional[str] = None) -> bool:
    """
    True if any blocking booking for the vehicle overlaps the half-open interval
    [start_date, end_date). Touching intervals do not conflict. A malformed interval
    (end <= start) is reported as a conflict.

    Must be called inside the per-vehicle critical section when the answer is used to
    decide an insert (see BookingTransactionManager.create_booking).
    """
    if end_date <= start_date:
        return True
    clashes = crud.overlapping_bookings(db, vehicle_id, start_date, end_date, BLOCKING_STATUSES,
                                        exclude_booking_id=exclude_booking_id)
    return len(clashes) > 0


def booked_intervals(db: Session, vehicle_id: str) -> List[BookedInterval]:
    """Non-cancelled bookings for a vehicle ordered by start date, for calendar display."""
    rows = crud.bookings_for_vehicle(db, vehicle_id, exclude_statuses=("cancelled",))
    return [
        BookedInterval(booking_id=b.id, start_date=b.start_date, end_date=b.end_date, status=b.status)
        for b in rows
    ]
