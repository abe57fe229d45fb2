from staybook.modules.bookings.policy import SYSTEM, Actor, Party, authorize_transition, parties_for
from staybook.modules.bookings.service import BookingService, listing_locks

__all__ = [
    "Actor",
    "BookingService",
    "Party",
    "SYSTEM",
    "authorize_transition",
    "listing_locks",
    "parties_for",
]
