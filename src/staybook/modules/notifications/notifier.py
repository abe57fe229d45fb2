"""Guest/host email notifications for booking events."""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from pathlib import Path
from typing import Callable

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape
from sqlalchemy.orm import Session

from staybook.config import get_env, section
from staybook.database import get_session
from staybook.events import Event, EventBus, EventType, event_bus
from staybook.models.booking import Booking, BookingStatus
from staybook.models.listing import Listing
from staybook.models.user import User

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent.parent / "templates"

# event -> (template, subject, notify host as well)
NOTIFICATIONS: dict[EventType, tuple[str, str, bool]] = {
    # Auto-confirmed bookings are only ever announced as created
    EventType.BOOKING_CREATED: ("booking_confirmed", "Your booking is confirmed", False),
    EventType.BOOKING_CONFIRMED: ("booking_confirmed", "Your booking is confirmed", False),
    EventType.BOOKING_CANCELLED: ("booking_cancelled", "Booking cancelled", True),
    EventType.PAYMENT_RECEIVED: ("payment_received", "Payment received", False),
    EventType.PAYMENT_REFUNDED: ("payment_refunded", "Your refund is on its way", False),
}


class BookingNotifier:
    """Renders and emails booking notifications.

    Runs as an event bus subscriber, so a failed delivery is logged by the
    bus and never rolls back the booking change that triggered it.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or get_session
        self._bus: EventBus | None = None
        self._config = section("notifications")
        self._jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(default=False),
        )

    def setup_event_handlers(self, bus: EventBus | None = None) -> None:
        """Subscribe to the booking events that warrant an email."""
        self._bus = bus or event_bus
        for event_type in NOTIFICATIONS:
            self._bus.subscribe(event_type, self.notify)

    def remove_event_handlers(self) -> None:
        bus = self._bus
        if bus is None:
            return
        for event_type in NOTIFICATIONS:
            bus.unsubscribe(event_type, self.notify)
        self._bus = None

    def notify(self, event: Event) -> None:
        if not self._config.get("enabled", True):
            return
        template_name, subject, include_host = NOTIFICATIONS[event.event_type]
        booking_id = event.data.get("booking_id")
        session = self._session_factory()
        try:
            booking = session.get(Booking, booking_id)
            if booking is None:
                logger.warning("Booking %s not found, skipping %s notification", booking_id, template_name)
                return
            if event.event_type == EventType.BOOKING_CREATED and booking.status != BookingStatus.CONFIRMED.value:
                return
            guest = session.get(User, booking.guest_id)
            host = session.get(User, booking.host_id)
            listing = session.get(Listing, booking.listing_id)
            body = self._render(template_name, booking, guest, listing, event)
            if body is None:
                return
            recipients = [guest.email] if guest else []
            if include_host and host:
                recipients.append(host.email)
        finally:
            session.close()

        for recipient in recipients:
            self._send_email(recipient, f"{subject} - booking #{booking_id}", body)

    def _render(
        self,
        template_name: str,
        booking: Booking,
        guest: User | None,
        listing: Listing | None,
        event: Event,
    ) -> str | None:
        filename = f"{template_name}.txt"
        try:
            template = self._jinja_env.get_template(filename)
        except TemplateNotFound:
            logger.error("No template found for %s", template_name)
            return None
        return template.render(
            guest_name=guest.name if guest else "Guest",
            listing_title=listing.title if listing else "your stay",
            check_in=booking.check_in.strftime("%B %d, %Y"),
            check_out=booking.check_out.strftime("%B %d, %Y"),
            nights=booking.nights,
            total_price=booking.total_price,
            currency=section("payments").get("currency", "usd").upper(),
            reason=booking.cancellation_reason or "",
            refund_amount=event.data.get("refund_amount", booking.refund_amount),
        )

    def _send_email(self, recipient: str, subject: str, body: str) -> None:
        """Send a message via SMTP, or just log it when SMTP is not configured."""
        smtp_host = get_env("SMTP_HOST")
        smtp_port = int(get_env("SMTP_PORT", "587"))
        smtp_user = get_env("SMTP_USER")
        smtp_password = get_env("SMTP_PASSWORD")

        email_msg = MIMEText(body)
        email_msg["Subject"] = subject
        email_msg["From"] = self._config.get("from_address") or smtp_user or "bookings@localhost"
        email_msg["To"] = recipient

        if not all([smtp_host, smtp_user, smtp_password]):
            logger.info("SMTP not configured, would send %r to %s", subject, recipient)
            return

        try:
            with smtplib.SMTP(smtp_host, smtp_port) as server:
                server.starttls()
                server.login(smtp_user, smtp_password)
                server.send_message(email_msg)
            logger.info("Email sent to %s", recipient)
        except Exception:
            logger.exception("Failed to send email to %s", recipient)
            raise
