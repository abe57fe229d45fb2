"""Listing withdrawal and the cascade cancellation of its open bookings."""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from staybook.database import get_session
from staybook.errors import NotFound, Unauthorized
from staybook.events import Event, EventBus, EventType, event_bus
from staybook.models.booking import OPEN_STATUSES, Booking, BookingStatus
from staybook.models.listing import Listing
from staybook.modules.bookings import SYSTEM, Actor, BookingService, listing_locks
from staybook.modules.bookings.service import booking_event

logger = logging.getLogger(__name__)

CASCADE_REASON = "Listing was removed by the host"


class CascadeCanceller:
    """Force-cancels every open booking of a listing as the system actor."""

    def __init__(self, bookings: BookingService) -> None:
        self._bookings = bookings

    def on_listing_deleted(self, session: Session, listing_id: int) -> list[Booking]:
        """Cancel open bookings inside the caller's transaction.

        The caller commits; any failure propagates so the listing removal
        can be abandoned along with the cancellations.
        """
        open_bookings = session.scalars(
            select(Booking).where(
                Booking.listing_id == listing_id,
                Booking.status.in_(OPEN_STATUSES),
            )
        ).all()
        for booking in open_bookings:
            self._bookings.apply_transition(
                session, SYSTEM, booking, BookingStatus.CANCELLED, reason=CASCADE_REASON
            )
        return list(open_bookings)


class ListingService:
    """The listing operations the booking engine is responsible for."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        bookings: BookingService | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session
        self._bookings = bookings or BookingService(session_factory=self._session_factory, bus=bus)
        self._cascade = CascadeCanceller(self._bookings)
        self._bus = bus or event_bus

    def get(self, listing_id: int) -> Listing:
        session = self._session_factory()
        try:
            listing = session.get(Listing, listing_id)
            if listing is None:
                raise NotFound("Listing not found")
            return listing
        finally:
            session.close()

    def deactivate(self, actor: Actor, listing_id: int) -> Listing:
        """Stop accepting new bookings; existing bookings are untouched."""
        session = self._session_factory()
        try:
            listing = self._load_owned(session, actor, listing_id, "update")
            listing.is_active = False
            session.commit()
            logger.info("Listing %s deactivated", listing_id)
            return listing
        finally:
            session.close()

    def delete_listing(self, actor: Actor, listing_id: int) -> list[Booking]:
        """Cancel the listing's open bookings, then remove it, atomically."""
        session = self._session_factory()
        try:
            with listing_locks.hold(listing_id):
                listing = self._load_owned(session, actor, listing_id, "delete")
                cancelled = self._cascade.on_listing_deleted(session, listing_id)
                session.delete(listing)
                session.commit()
            for booking in cancelled:
                session.refresh(booking)
        finally:
            session.close()

        logger.info("Listing %s deleted; cancelled %d bookings", listing_id, len(cancelled))
        for booking in cancelled:
            self._bus.publish(booking_event(EventType.BOOKING_CANCELLED, booking))
        self._bus.publish(Event(
            event_type=EventType.LISTING_DELETED,
            data={"listing_id": listing_id, "cancelled_bookings": [b.id for b in cancelled]},
        ))
        return cancelled

    def _load_owned(self, session: Session, actor: Actor, listing_id: int, action: str) -> Listing:
        listing = session.get(Listing, listing_id)
        if listing is None:
            raise NotFound("Listing not found")
        if listing.host_id != actor.user_id and not actor.is_admin:
            raise Unauthorized(f"Not authorized to {action} this listing")
        return listing
