"""Half-open date range availability checks against open bookings."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from staybook.database import get_session
from staybook.models.booking import OPEN_STATUSES, Booking

logger = logging.getLogger(__name__)


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """True if [a_start, a_end) and [b_start, b_end) share at least one night."""
    return a_start < b_end and a_end > b_start


class AvailabilityChecker:
    """Decides whether a stay conflicts with a pending or confirmed booking."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or get_session

    def is_available(
        self,
        listing_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: int | None = None,
    ) -> bool:
        session = self._session_factory()
        try:
            return self.is_available_in(session, listing_id, check_in, check_out, exclude_booking_id)
        finally:
            session.close()

    def is_available_in(
        self,
        session: Session,
        listing_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: int | None = None,
    ) -> bool:
        """Same as ``is_available`` but inside the caller's session."""
        blocking = self.count_blocking(session, listing_id, check_in, check_out, exclude_booking_id)
        if blocking:
            logger.info(
                "Listing %s unavailable %s..%s (%d blocking bookings)",
                listing_id, check_in, check_out, blocking,
            )
        return blocking == 0

    def count_blocking(
        self,
        session: Session,
        listing_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: int | None = None,
    ) -> int:
        stmt = select(func.count(Booking.id)).where(
            Booking.listing_id == listing_id,
            Booking.status.in_(OPEN_STATUSES),
            Booking.check_in < check_out,
            Booking.check_out > check_in,
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return session.scalar(stmt) or 0
