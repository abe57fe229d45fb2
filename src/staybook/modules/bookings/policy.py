"""Who may move a booking from one status to another.

Every status change, whether requested through a dedicated endpoint, embedded
in a generic update, or performed by the engine itself, is checked against
``TRANSITIONS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from staybook.errors import InvalidState, Unauthorized
from staybook.models.booking import Booking, BookingStatus
from staybook.models.user import Role


class Party(str, Enum):
    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """The acting principal as supplied by the identity layer."""

    user_id: int | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def is_system(self) -> bool:
        return self.role == Party.SYSTEM.value


SYSTEM = Actor(user_id=None, role=Party.SYSTEM.value)

_ANY_PARTY = frozenset({Party.GUEST, Party.HOST, Party.ADMIN, Party.SYSTEM})

TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], frozenset[Party]] = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED): frozenset({Party.HOST, Party.ADMIN, Party.SYSTEM}),
    (BookingStatus.PENDING, BookingStatus.CANCELLED): _ANY_PARTY,
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED): _ANY_PARTY,
    # Also requires check-out to have passed, enforced by the service
    (BookingStatus.CONFIRMED, BookingStatus.COMPLETED): frozenset({Party.ADMIN, Party.SYSTEM}),
}


def parties_for(actor: Actor, booking: Booking) -> set[Party]:
    """Every capacity in which ``actor`` relates to ``booking``."""
    parties: set[Party] = set()
    if actor.is_system:
        parties.add(Party.SYSTEM)
        return parties
    if actor.is_admin:
        parties.add(Party.ADMIN)
    if actor.user_id is not None:
        if booking.guest_id == actor.user_id:
            parties.add(Party.GUEST)
        if booking.host_id == actor.user_id:
            parties.add(Party.HOST)
    return parties


def require_party(actor: Actor, booking: Booking) -> set[Party]:
    """Reject actors with no relation to the booking at all."""
    parties = parties_for(actor, booking)
    if not parties:
        raise Unauthorized("Not authorized to access this booking")
    return parties


def authorize_transition(actor: Actor, booking: Booking, target: BookingStatus) -> BookingStatus:
    """Validate ``booking.status -> target`` for ``actor``; return the current status.

    Raises Unauthorized if the actor is not a party to the booking or their
    party may not perform this transition, InvalidState if the transition is
    not legal from the current status.
    """
    parties = require_party(actor, booking)
    current = BookingStatus(booking.status)
    allowed = TRANSITIONS.get((current, target))
    if allowed is None:
        raise InvalidState(f"Cannot move booking from {current.value} to {target.value}")
    if not allowed & parties:
        raise Unauthorized(f"Not authorized to mark this booking {target.value}")
    return current
