"""Database models."""

from staybook.models.booking import BookedNight, Booking, BookingStatus, PaymentStatus
from staybook.models.listing import RATING_CATEGORIES, Listing
from staybook.models.review import Review
from staybook.models.user import Role, User

__all__ = [
    "BookedNight",
    "Booking",
    "BookingStatus",
    "Listing",
    "PaymentStatus",
    "RATING_CATEGORIES",
    "Review",
    "Role",
    "User",
]
