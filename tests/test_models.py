"""Tests for database models."""

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from staybook.models.booking import BookedNight, Booking, nights_between
from staybook.models.listing import Listing


def test_nights_between():
    assert nights_between(date(2024, 6, 1), date(2024, 6, 4)) == [
        date(2024, 6, 1), date(2024, 6, 2), date(2024, 6, 3),
    ]
    assert nights_between(date(2024, 6, 1), date(2024, 6, 1)) == []


def test_booking_to_dict(book):
    booking = book(nights=3, adults=2, guest_info={"phone": "+15550100"})
    data = booking.to_dict()

    assert data["checkIn"] == "2024-06-01"
    assert data["guests"] == {"adults": 2, "children": 0, "infants": 0}
    assert data["guestInfo"] == {"phone": "+15550100"}
    assert data["priceBreakdown"] == {
        "basePrice": 300, "nights": 3, "serviceFee": 30, "cleaningFee": 50, "taxes": 30,
    }
    assert data["totalPrice"] == 410
    assert data["cancellation"] is None


def test_booked_night_unique_per_listing(db_session: Session, listing: Listing, guest):
    def _booking():
        return Booking(
            listing_id=listing.id, guest_id=guest.id, host_id=listing.host_id,
            check_in=date(2024, 6, 1), check_out=date(2024, 6, 2),
            base_price=100, nights=1, service_fee=10, cleaning_fee=50, taxes=13, total_price=173,
        )

    first = _booking()
    first.booked_nights = [BookedNight(listing_id=listing.id, night=date(2024, 6, 1))]
    db_session.add(first)
    db_session.commit()

    second = _booking()
    second.booked_nights = [BookedNight(listing_id=listing.id, night=date(2024, 6, 1))]
    db_session.add(second)
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_listing_rating_defaults(db_session: Session, listing: Listing):
    loaded = db_session.get(Listing, listing.id)
    assert loaded.rating == 0
    assert loaded.review_count == 0
    assert set(loaded.rating_breakdown.values()) == {0}
