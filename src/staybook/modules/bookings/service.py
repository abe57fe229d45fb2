"""Booking lifecycle: creation, status transitions and guarded updates."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterator

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from staybook.config import section
from staybook.database import get_session
from staybook.errors import CapacityExceeded, Conflict, InvalidDateRange, InvalidState, NotFound, Unauthorized
from staybook.events import Event, EventBus, EventType, event_bus
from staybook.models.booking import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    BookedNight,
    Booking,
    BookingStatus,
    nights_between,
)
from staybook.models.listing import Listing
from staybook.models.user import Role, User
from staybook.modules.availability import AvailabilityChecker
from staybook.modules.bookings.policy import SYSTEM, Actor, authorize_transition, require_party
from staybook.modules.pricing import PricingCalculator

logger = logging.getLogger(__name__)

_TRANSITION_EVENTS = {
    BookingStatus.CONFIRMED: EventType.BOOKING_CONFIRMED,
    BookingStatus.CANCELLED: EventType.BOOKING_CANCELLED,
    BookingStatus.COMPLETED: EventType.BOOKING_COMPLETED,
}

_GUEST_FIELDS = ("adults", "children", "infants")


class ListingLocks:
    """Per-listing mutexes held across availability check and insert.

    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, listing_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(listing_id, threading.Lock())
            self._users[listing_id] = self._users.get(listing_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[listing_id] -= 1
                if not self._users[listing_id]:
                    del self._users[listing_id]
                    del self._locks[listing_id]


listing_locks = ListingLocks()


def booking_event(event_type: EventType, booking: Booking, **extra: Any) -> Event:
    data = {
        "booking_id": booking.id,
        "listing_id": booking.listing_id,
        "guest_id": booking.guest_id,
        "host_id": booking.host_id,
        "status": booking.status,
        "payment_status": booking.payment_status,
    }
    data.update(extra)
    return Event(event_type=event_type, data=data)


class BookingService:
    """Owns the booking state machine.

    Every mutation runs in one session and commits once; a guard failure
    raises before anything is written. Status writes are compare-and-set on
    the status read at the start of the operation, so a transition that lost a
    race against another one is rejected instead of overwriting it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        availability: AvailabilityChecker | None = None,
        pricing: PricingCalculator | None = None,
        bus: EventBus | None = None,
        today: Callable[[], date] | None = None,
        auto_confirm: bool | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session
        self._availability = availability or AvailabilityChecker(self._session_factory)
        self._pricing = pricing or PricingCalculator.from_settings()
        self._bus = bus or event_bus
        self._today = today or date.today
        if auto_confirm is None:
            auto_confirm = section("booking").get("auto_confirm", True)
        self._auto_confirm = bool(auto_confirm)

    # --- Creation ---

    def create(
        self,
        actor: Actor,
        listing_id: int,
        check_in: date,
        check_out: date,
        adults: int = 1,
        children: int = 0,
        infants: int = 0,
        guest_info: dict[str, Any] | None = None,
        special_requests: str | None = None,
    ) -> Booking:
        """Reserve a listing for [check_in, check_out)."""
        session = self._session_factory()
        try:
            with listing_locks.hold(listing_id):
                listing = session.scalars(
                    select(Listing).where(Listing.id == listing_id).with_for_update()
                ).first()
                if listing is None:
                    raise NotFound("Listing not found")
                if not listing.is_active:
                    raise InvalidState("Listing is not accepting bookings")
                if actor.user_id == listing.host_id:
                    raise Unauthorized("You cannot book your own listing")
                self._validate_dates(check_in, check_out)

                total_guests = adults + children + infants
                if total_guests > listing.max_guests:
                    raise CapacityExceeded(
                        f"Listing can accommodate maximum {listing.max_guests} guests"
                    )

                if not self._availability.is_available_in(session, listing_id, check_in, check_out):
                    raise Conflict("Listing is not available for selected dates")

                price = self._pricing.compute_price(listing.nightly_rate, check_in, check_out)
                status = BookingStatus.CONFIRMED if self._auto_confirm else BookingStatus.PENDING
                booking = Booking(
                    listing_id=listing.id,
                    guest_id=actor.user_id,
                    host_id=listing.host_id,
                    check_in=check_in,
                    check_out=check_out,
                    adults=adults,
                    children=children,
                    infants=infants,
                    guest_info=guest_info,
                    special_requests=special_requests,
                    base_price=price.base_price,
                    nights=price.nights,
                    service_fee=price.service_fee,
                    cleaning_fee=price.cleaning_fee,
                    taxes=price.taxes,
                    total_price=price.total_price,
                    status=status.value,
                )
                booking.booked_nights = self._claim_nights(listing.id, check_in, check_out)
                session.add(booking)
                self._commit_claims(session)
            logger.info(
                "Created booking %s on listing %s for %s..%s (%s, total %s)",
                booking.id, listing_id, check_in, check_out, booking.status, booking.total_price,
            )
        finally:
            session.close()

        self._bus.publish(booking_event(EventType.BOOKING_CREATED, booking))
        return booking

    # --- Reads ---

    def get(self, actor: Actor, booking_id: int) -> Booking:
        """Load a booking the actor is party to, completing it if its stay has ended."""
        session = self._session_factory()
        try:
            booking = self._load(session, booking_id)
            if not self._has_valid_references(session, booking):
                raise NotFound("This booking has invalid references and cannot be displayed")
            if not actor.is_system:
                require_party(actor, booking)
            completed = self._complete_if_elapsed(session, booking)
        finally:
            session.close()
        if completed:
            self._bus.publish(booking_event(EventType.BOOKING_COMPLETED, booking))
        return booking

    def list_for(self, actor: Actor) -> list[Booking]:
        """Bookings visible to the actor, newest first, skipping dangling records."""
        session = self._session_factory()
        try:
            known_users = select(User.id)
            stmt = (
                select(Booking)
                .where(Booking.guest_id.in_(known_users), Booking.host_id.in_(known_users))
                .order_by(Booking.created_at.desc(), Booking.id.desc())
            )
            if actor.is_admin or actor.is_system:
                pass
            elif actor.role == Role.HOST.value:
                stmt = stmt.where(Booking.host_id == actor.user_id)
            else:
                stmt = stmt.where(Booking.guest_id == actor.user_id)
            return list(session.scalars(stmt).all())
        finally:
            session.close()

    # --- Transitions ---

    def confirm(self, actor: Actor, booking_id: int) -> Booking:
        return self.transition(actor, booking_id, BookingStatus.CONFIRMED)

    def cancel(self, actor: Actor, booking_id: int, reason: str | None = None) -> Booking:
        return self.transition(actor, booking_id, BookingStatus.CANCELLED, reason=reason)

    def complete(self, actor: Actor, booking_id: int) -> Booking:
        return self.transition(actor, booking_id, BookingStatus.COMPLETED)

    def transition(
        self,
        actor: Actor,
        booking_id: int,
        target: BookingStatus,
        reason: str | None = None,
    ) -> Booking:
        session = self._session_factory()
        try:
            booking = self._load(session, booking_id)
            self.apply_transition(session, actor, booking, target, reason=reason)
            session.commit()
            session.refresh(booking)
        finally:
            session.close()

        logger.info("Booking %s -> %s by %s", booking_id, target.value, actor.role)
        self._bus.publish(booking_event(_TRANSITION_EVENTS[target], booking))
        return booking

    def apply_transition(
        self,
        session: Session,
        actor: Actor,
        booking: Booking,
        target: BookingStatus,
        reason: str | None = None,
        extra_values: dict[str, Any] | None = None,
    ) -> None:
        """Guard and write one status change inside the caller's transaction.

        The caller commits. Used directly by payment reconciliation and the
        cascade canceller, which share the caller's session.
        """
        current = authorize_transition(actor, booking, target)
        values: dict[str, Any] = dict(extra_values or {})
        if target is BookingStatus.COMPLETED and booking.check_out > self._today():
            raise InvalidState("Booking cannot be completed before check-out")
        if target is BookingStatus.CANCELLED:
            values.update(
                cancelled_by=actor.user_id,
                cancelled_at=datetime.now(timezone.utc),
                cancellation_reason=reason or "No reason provided",
            )
        self._write_status(session, booking, current, target, values)

    def complete_elapsed(self) -> int:
        """Complete every confirmed booking whose check-out has passed."""
        today = self._today()
        session = self._session_factory()
        completed: list[Booking] = []
        try:
            due = session.scalars(
                select(Booking).where(
                    Booking.status == BookingStatus.CONFIRMED.value,
                    Booking.check_out <= today,
                )
            ).all()
            for booking in due:
                try:
                    self.apply_transition(session, SYSTEM, booking, BookingStatus.COMPLETED)
                    session.commit()
                except InvalidState:
                    # Changed by another request since the sweep read it
                    session.rollback()
                    continue
                session.refresh(booking)
                completed.append(booking)
        finally:
            session.close()

        for booking in completed:
            self._bus.publish(booking_event(EventType.BOOKING_COMPLETED, booking))
        if completed:
            logger.info("Completed %d elapsed bookings", len(completed))
        return len(completed)

    # --- Generic update ---

    def update(self, actor: Actor, booking_id: int, patch: dict[str, Any]) -> Booking:
        """Patch booking fields; an embedded status goes through the policy table."""
        session = self._session_factory()
        target: BookingStatus | None = None
        try:
            booking = self._load(session, booking_id)
            require_party(actor, booking)

            raw_status = patch.get("status")
            if raw_status is not None:
                try:
                    requested = BookingStatus(raw_status)
                except ValueError:
                    raise InvalidState(f"Unknown booking status {raw_status!r}") from None
                if requested.value != booking.status:
                    target = requested
                    authorize_transition(actor, booking, target)

            new_check_in = patch.get("check_in", booking.check_in)
            new_check_out = patch.get("check_out", booking.check_out)
            dates_changed = (new_check_in, new_check_out) != (booking.check_in, booking.check_out)

            with listing_locks.hold(booking.listing_id):
                values = self._field_changes(session, booking, patch, new_check_in, new_check_out, dates_changed)
                if target is not None:
                    self.apply_transition(
                        session, actor, booking, target,
                        reason=patch.get("reason"), extra_values=values,
                    )
                elif values:
                    self._write_status(
                        session, booking, BookingStatus(booking.status), BookingStatus(booking.status), values
                    )
                if dates_changed and (target is None or target.value in OPEN_STATUSES):
                    session.execute(delete(BookedNight).where(BookedNight.booking_id == booking.id))
                    session.add_all(
                        BookedNight(listing_id=booking.listing_id, night=night, booking_id=booking.id)
                        for night in nights_between(new_check_in, new_check_out)
                    )
                self._commit_claims(session)
            session.refresh(booking)
        finally:
            session.close()

        logger.info("Updated booking %s by %s", booking_id, actor.role)
        if target is not None:
            self._bus.publish(booking_event(_TRANSITION_EVENTS[target], booking))
        else:
            self._bus.publish(booking_event(EventType.BOOKING_UPDATED, booking))
        return booking

    def _field_changes(
        self,
        session: Session,
        booking: Booking,
        patch: dict[str, Any],
        check_in: date,
        check_out: date,
        dates_changed: bool,
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name in ("guest_info", "special_requests"):
            if name in patch:
                values[name] = patch[name]

        counts = {name: patch.get(name, getattr(booking, name)) for name in _GUEST_FIELDS}
        counts_changed = any(counts[name] != getattr(booking, name) for name in _GUEST_FIELDS)
        if not counts_changed and not dates_changed:
            return values

        listing = session.get(Listing, booking.listing_id)
        if listing is None:
            raise NotFound("Listing not found")

        if counts_changed:
            if sum(counts.values()) > listing.max_guests:
                raise CapacityExceeded(
                    f"Listing can accommodate maximum {listing.max_guests} guests"
                )
            values.update(counts)

        if dates_changed:
            if not booking.is_open:
                raise InvalidState(f"Cannot change dates of a {booking.status} booking")
            if check_in != booking.check_in:
                self._validate_dates(check_in, check_out)
            elif check_out <= check_in:
                raise InvalidDateRange("Check-out date must be after check-in date")
            if not self._availability.is_available_in(
                session, booking.listing_id, check_in, check_out, exclude_booking_id=booking.id
            ):
                raise Conflict("Listing is not available for selected dates")
            price = self._pricing.compute_price(listing.nightly_rate, check_in, check_out)
            values.update(
                check_in=check_in,
                check_out=check_out,
                base_price=price.base_price,
                nights=price.nights,
                service_fee=price.service_fee,
                cleaning_fee=price.cleaning_fee,
                taxes=price.taxes,
                total_price=price.total_price,
            )
        return values

    # --- Helpers ---

    def _load(self, session: Session, booking_id: int) -> Booking:
        booking = session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    def _has_valid_references(self, session: Session, booking: Booking) -> bool:
        return (
            session.get(User, booking.guest_id) is not None
            and session.get(User, booking.host_id) is not None
        )

    def _validate_dates(self, check_in: date, check_out: date) -> None:
        if check_in < self._today():
            raise InvalidDateRange("Check-in date cannot be in the past")
        if check_out <= check_in:
            raise InvalidDateRange("Check-out date must be after check-in date")

    def _claim_nights(self, listing_id: int, check_in: date, check_out: date) -> list[BookedNight]:
        return [
            BookedNight(listing_id=listing_id, night=night)
            for night in nights_between(check_in, check_out)
        ]

    def _commit_claims(self, session: Session) -> None:
        """Commit, turning a booked-night collision into a Conflict."""
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise Conflict("Listing is not available for selected dates") from None

    def _write_status(
        self,
        session: Session,
        booking: Booking,
        current: BookingStatus,
        target: BookingStatus,
        values: dict[str, Any],
    ) -> None:
        result = session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == current.value)
            .values(status=target.value, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise InvalidState(
                f"Booking {booking.id} is no longer {current.value}; reload and retry"
            )
        if target.value in TERMINAL_STATUSES and current.value in OPEN_STATUSES:
            session.execute(delete(BookedNight).where(BookedNight.booking_id == booking.id))

    def _complete_if_elapsed(self, session: Session, booking: Booking) -> bool:
        if booking.status != BookingStatus.CONFIRMED.value or booking.check_out > self._today():
            return False
        try:
            self.apply_transition(session, SYSTEM, booking, BookingStatus.COMPLETED)
            session.commit()
        except InvalidState:
            session.rollback()
            session.refresh(booking)
            return False
        session.refresh(booking)
        logger.info("Booking %s completed after check-out %s", booking.id, booking.check_out)
        return True
