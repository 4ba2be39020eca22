from datetime import datetime, timedelta

import pytest

from booking_state import TERMINAL_STATES, can_transition, check_renter_cancellation, validate_transition
from errors import InvalidTransitionError


@pytest.mark.parametrize("current,target", [
    ("pending", "confirmed"),
    ("pending", "payment_failed"),
    ("pending", "cancelled"),
    ("confirmed", "cancelled"),
    ("confirmed", "active"),
    ("active", "completed"),
    ("confirmed", "refunded"),
    ("active", "refunded"),
    ("completed", "refunded"),
    ("payment_failed", "pending"),
])
def test_allowed_transitions(current, target):
    validate_transition(current, target)


@pytest.mark.parametrize("current,target", [
    ("pending", "active"),
    ("pending", "refunded"),
    ("active", "cancelled"),
    ("confirmed", "completed"),
    ("payment_failed", "confirmed"),
])
def test_rejected_transitions_name_both_states(current, target):
    with pytest.raises(InvalidTransitionError) as exc:
        validate_transition(current, target)
    assert exc.value.current == current
    assert exc.value.requested == target


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES - {"completed"}:
        for target in ("pending", "confirmed", "active", "completed", "cancelled", "refunded"):
            assert not can_transition(state, target)
    assert not can_transition("completed", "cancelled")


def test_renter_cancellation_window():
    start = datetime(2025, 3, 1)
    check_renter_cancellation("confirmed", start, start - timedelta(hours=25))
    with pytest.raises(InvalidTransitionError):
        check_renter_cancellation("confirmed", start, start - timedelta(hours=24))
    with pytest.raises(InvalidTransitionError):
        check_renter_cancellation("confirmed", start, start - timedelta(hours=2))


def test_renter_cannot_cancel_unconfirmed_booking():
    start = datetime(2025, 3, 1)
    with pytest.raises(InvalidTransitionError, match="only confirmed"):
        check_renter_cancellation("pending", start, start - timedelta(days=10))
