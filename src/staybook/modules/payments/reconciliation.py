"""Keeps booking payment state consistent with the payment gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from staybook.config import section
from staybook.database import get_session
from staybook.errors import InvalidState, NotFound, PaymentGatewayError, Unauthorized, UpstreamEventUnrecognized
from staybook.events import EventBus, EventType, event_bus
from staybook.models.booking import TERMINAL_STATUSES, Booking, BookingStatus, PaymentStatus
from staybook.models.listing import Listing
from staybook.modules.bookings import SYSTEM, Actor, BookingService, Party, parties_for
from staybook.modules.bookings.service import booking_event
from staybook.modules.payments.gateway import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    GatewayEvent,
    PaymentGateway,
    StripeGateway,
)
from staybook.modules.pricing.calculator import amount_minor_units

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    refund_id: str
    booking_id: int
    amount: float
    reason: str | None

    def to_dict(self) -> dict:
        return {
            "refundId": self.refund_id,
            "bookingId": self.booking_id,
            "amount": self.amount,
            "reason": self.reason,
        }


class PaymentService:
    """Payment intents, gateway events, manual sync and refunds.

    Gateway round trips never happen while a write is pending: the booking is
    read, the gateway is called, and only a successful response is persisted.
    """

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        session_factory: Callable[[], Session] | None = None,
        bookings: BookingService | None = None,
        bus: EventBus | None = None,
        currency: str | None = None,
    ) -> None:
        self._gateway = gateway or StripeGateway()
        self._session_factory = session_factory or get_session
        self._bookings = bookings or BookingService(session_factory=self._session_factory, bus=bus)
        self._bus = bus or event_bus
        self._currency = currency or section("payments").get("currency", "usd")
        self._handlers: dict[str, Callable[[GatewayEvent], None]] = {
            EVENT_PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            EVENT_PAYMENT_FAILED: self._on_payment_failed,
        }

    # --- Intents ---

    def create_intent(self, actor: Actor, booking_id: int) -> str:
        """Open a gateway payment intent for the booking; return its client secret."""
        session = self._session_factory()
        try:
            booking = self._load(session, booking_id)
            self._require(actor, booking, {Party.GUEST, Party.ADMIN}, "Not authorized to pay for this booking")
            if booking.status in TERMINAL_STATUSES:
                raise InvalidState(f"Cannot pay for a {booking.status} booking")
            if booking.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
                raise InvalidState(f"Booking payment is already {booking.payment_status}")
            base_amount = booking.total_price or booking.base_price
            if not base_amount:
                listing = session.get(Listing, booking.listing_id)
                base_amount = listing.nightly_rate if listing else 0
            guest_id = booking.guest_id
        finally:
            session.close()

        amount = amount_minor_units(base_amount)
        intent = self._gateway.create_intent(
            amount=amount,
            currency=self._currency,
            metadata={"bookingId": str(booking_id), "guestId": str(guest_id)},
            description=f"Payment for booking {booking_id}",
        )

        session = self._session_factory()
        try:
            session.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(payment_intent_id=intent.id)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        finally:
            session.close()
        logger.info("Payment intent %s opened for booking %s (%d minor units)", intent.id, booking_id, amount)
        return intent.client_secret

    # --- Webhook ---

    def handle_webhook(self, payload: bytes, signature: str | None) -> dict:
        """Verify a signed gateway delivery and process it.

        Raises InvalidWebhook for bodies that are not genuine gateway
        deliveries; anything after verification is acknowledged.
        """
        event = self._gateway.construct_event(payload, signature)
        self.on_gateway_event(event)
        return {"received": True}

    def on_gateway_event(self, event: GatewayEvent) -> None:
        """Apply one gateway event. Never raises."""
        try:
            handler = self._handlers.get(event.type)
            if handler is None:
                raise UpstreamEventUnrecognized(event.type)
            handler(event)
        except UpstreamEventUnrecognized:
            logger.debug("Ignoring gateway event %s (%s)", event.id, event.type)
        except Exception:
            logger.exception("Failed to process gateway event %s (%s)", event.id, event.type)

    def _event_booking_id(self, event: GatewayEvent) -> int | None:
        raw = event.metadata.get("bookingId")
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Gateway event %s has no usable bookingId: %r", event.id, raw)
            return None

    def _on_payment_succeeded(self, event: GatewayEvent) -> None:
        booking_id = self._event_booking_id(event)
        if booking_id is None:
            return
        try:
            self.record_payment(booking_id)
        except NotFound:
            logger.warning("Gateway event %s references unknown booking %s", event.id, booking_id)

    def _on_payment_failed(self, event: GatewayEvent) -> None:
        booking_id = self._event_booking_id(event)
        if booking_id is None:
            return
        session = self._session_factory()
        try:
            result = session.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.payment_status == PaymentStatus.PENDING.value,
                )
                .values(payment_status=PaymentStatus.FAILED.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            booking = session.get(Booking, booking_id)
        finally:
            session.close()
        if result.rowcount == 1 and booking is not None:
            logger.info("Payment failed for booking %s", booking_id)
            self._bus.publish(booking_event(EventType.PAYMENT_FAILED, booking))

    # --- Manual sync ---

    def sync_status(self, actor: Actor, booking_id: int, intent_id: str | None = None) -> Booking:
        """Confirm payment from the client side, verified against the gateway."""
        session = self._session_factory()
        try:
            booking = self._load(session, booking_id)
            self._require(actor, booking, {Party.GUEST, Party.ADMIN}, "Not authorized to update this booking")
            intent_id = intent_id or booking.payment_intent_id
        finally:
            session.close()
        if not intent_id:
            raise PaymentGatewayError("No payment intent to verify for this booking")

        intent = self._gateway.retrieve_intent(intent_id)
        if intent.metadata.get("bookingId") != str(booking_id):
            raise PaymentGatewayError("Payment intent does not belong to this booking")
        if not intent.succeeded:
            raise PaymentGatewayError("Payment not completed successfully")
        return self.record_payment(booking_id, intent_id=intent_id)

    # --- Shared success path ---

    def record_payment(self, booking_id: int, intent_id: str | None = None) -> Booking:
        """Mark a booking paid and confirm it if still pending. Idempotent.

        Terminal bookings keep their status; only the payment axis moves.
        """
        session = self._session_factory()
        changed = False
        try:
            for _ in range(2):
                booking = self._load(session, booking_id)
                try:
                    changed = self._apply_payment(session, booking, intent_id)
                    session.commit()
                    break
                except InvalidState:
                    # Status moved under us; re-read and re-evaluate once
                    session.rollback()
            else:
                raise InvalidState(f"Booking {booking_id} changed concurrently during payment")
            session.refresh(booking)
        finally:
            session.close()

        if changed:
            logger.info("Payment recorded for booking %s", booking_id)
            self._bus.publish(booking_event(EventType.PAYMENT_RECEIVED, booking))
        return booking

    def _apply_payment(self, session: Session, booking: Booking, intent_id: str | None) -> bool:
        extra = {"payment_status": PaymentStatus.PAID.value}
        if intent_id:
            extra["payment_intent_id"] = intent_id

        if booking.status == BookingStatus.PENDING.value:
            self._bookings.apply_transition(
                session, SYSTEM, booking, BookingStatus.CONFIRMED, extra_values=extra
            )
            return True

        if booking.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
            return False

        if booking.status in TERMINAL_STATUSES:
            logger.warning(
                "Payment captured for %s booking %s; refund may be required",
                booking.status, booking.id,
            )
        result = session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.payment_status == booking.payment_status)
            .values(**extra)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # --- Refunds ---

    def refund(
        self,
        actor: Actor,
        booking_id: int,
        amount: float | None = None,
        reason: str | None = None,
    ) -> RefundResult:
        """Refund through the gateway, then record it locally."""
        session = self._session_factory()
        try:
            booking = self._load(session, booking_id)
            self._require(actor, booking, {Party.HOST, Party.ADMIN}, "Not authorized to refund this booking")
            if booking.payment_status != PaymentStatus.PAID.value:
                raise InvalidState(f"Cannot refund a booking whose payment is {booking.payment_status}")
            if amount is None:
                amount = booking.total_price
            if amount <= 0 or amount > booking.total_price:
                raise InvalidState(f"Refund amount must be between 0 and {booking.total_price}")
            intent_id = booking.payment_intent_id
        finally:
            session.close()
        if not intent_id:
            raise PaymentGatewayError("No captured payment to refund for this booking")

        refund = self._gateway.refund(intent_id, amount=amount_minor_units(amount), reason=reason)
        if refund.status in ("failed", "canceled"):
            raise PaymentGatewayError(f"Refund {refund.id} was {refund.status}")

        session = self._session_factory()
        try:
            result = session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.payment_status == PaymentStatus.PAID.value)
                .values(payment_status=PaymentStatus.REFUNDED.value, refund_amount=amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidState(f"Booking {booking_id} payment changed during refund")
            session.commit()
            booking = session.get(Booking, booking_id)
        finally:
            session.close()

        logger.info("Refunded %s on booking %s (%s)", amount, booking_id, refund.id)
        self._bus.publish(booking_event(EventType.PAYMENT_REFUNDED, booking, refund_amount=amount))
        return RefundResult(refund_id=refund.id, booking_id=booking_id, amount=amount, reason=reason)

    # --- Helpers ---

    def _load(self, session: Session, booking_id: int) -> Booking:
        booking = session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    def _require(self, actor: Actor, booking: Booking, allowed: set[Party], message: str) -> None:
        if not parties_for(actor, booking) & allowed:
            raise Unauthorized(message)
