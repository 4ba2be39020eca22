from datetime import datetime, timedelta

from errors import InvalidTransitionError

TERMINAL_STATES = {"completed", "cancelled", "refunded"}

_ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "payment_failed", "cancelled"},
    "confirmed": {"active", "cancelled", "refunded"},
    "active": {"completed", "refunded"},
    "completed": {"refunded"},
    # a retried checkout puts the booking back in line for payment
    "payment_failed": {"pending"},
    "cancelled": set(),
    "refunded": set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is in the transition table."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current=current, requested=target)


def check_renter_cancellation(status: str, start_date: datetime, now: datetime,
                              window_hours: int = 24) -> None:
    """
    A renter may cancel only a confirmed booking, and only while more than `window_hours`
    remain before pickup. Admins skip this check.
    """
    if status != "confirmed":
        raise InvalidTransitionError(status, "cancelled", reason="only confirmed bookings can be cancelled")
    if start_date - now <= timedelta(hours=window_hours):
        raise InvalidTransitionError(
            status, "cancelled", reason=f"cannot cancel within {window_hours} hours of start")
