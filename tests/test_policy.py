"""Tests for the transition policy table."""

import pytest

from staybook.errors import InvalidState, Unauthorized
from staybook.models.booking import Booking, BookingStatus
from staybook.modules.bookings import SYSTEM, Actor, Party, authorize_transition, parties_for
from staybook.modules.bookings.policy import TRANSITIONS

GUEST = Actor(user_id=1, role="guest")
HOST = Actor(user_id=2, role="host")
ADMIN = Actor(user_id=3, role="admin")
STRANGER = Actor(user_id=4, role="guest")


def _booking(status: str) -> Booking:
    return Booking(id=10, listing_id=5, guest_id=1, host_id=2, status=status)


def test_parties_for():
    booking = _booking("pending")
    assert parties_for(GUEST, booking) == {Party.GUEST}
    assert parties_for(HOST, booking) == {Party.HOST}
    assert parties_for(ADMIN, booking) == {Party.ADMIN}
    assert parties_for(SYSTEM, booking) == {Party.SYSTEM}
    assert parties_for(STRANGER, booking) == set()


def test_terminal_statuses_have_no_outgoing_transitions():
    for current, _target in TRANSITIONS:
        assert current in (BookingStatus.PENDING, BookingStatus.CONFIRMED)


@pytest.mark.parametrize(
    "actor,status,target",
    [
        (HOST, "pending", BookingStatus.CONFIRMED),
        (ADMIN, "pending", BookingStatus.CONFIRMED),
        (SYSTEM, "pending", BookingStatus.CONFIRMED),
        (GUEST, "pending", BookingStatus.CANCELLED),
        (HOST, "confirmed", BookingStatus.CANCELLED),
        (ADMIN, "confirmed", BookingStatus.COMPLETED),
        (SYSTEM, "confirmed", BookingStatus.COMPLETED),
    ],
)
def test_allowed_transitions(actor, status, target):
    assert authorize_transition(actor, _booking(status), target) == BookingStatus(status)


def test_guest_cannot_confirm():
    with pytest.raises(Unauthorized):
        authorize_transition(GUEST, _booking("pending"), BookingStatus.CONFIRMED)


def test_host_cannot_complete():
    with pytest.raises(Unauthorized):
        authorize_transition(HOST, _booking("confirmed"), BookingStatus.COMPLETED)


def test_stranger_rejected_before_state_check():
    with pytest.raises(Unauthorized):
        authorize_transition(STRANGER, _booking("cancelled"), BookingStatus.CONFIRMED)


@pytest.mark.parametrize("status", ["cancelled", "completed"])
def test_terminal_bookings_are_immutable(status):
    for target in BookingStatus:
        with pytest.raises(InvalidState):
            authorize_transition(ADMIN, _booking(status), target)


def test_pending_cannot_complete():
    with pytest.raises(InvalidState):
        authorize_transition(ADMIN, _booking("pending"), BookingStatus.COMPLETED)
