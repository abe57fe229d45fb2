"""Shared test fixtures."""

from __future__ import annotations

import json
import os
from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite://"  # In-memory DB for tests

from staybook.database import Base
from staybook.events import EventBus
from staybook.models.listing import Listing
from staybook.models.user import Role, User
from staybook.modules.bookings import Actor, BookingService
from staybook.modules.listings import ListingService
from staybook.modules.payments import GatewayEvent, GatewayIntent, GatewayRefund, InvalidWebhook, PaymentGateway
from staybook.modules.payments import PaymentService
from staybook.modules.pricing import PricingCalculator
from staybook.modules.reviews import RatingRollup, ReviewService

# Import all models to register them
import staybook.models.booking  # noqa: F401
import staybook.models.review  # noqa: F401

TODAY = date(2024, 5, 1)


class FakeGateway(PaymentGateway):
    """In-memory stand-in for the payment provider."""

    def __init__(self) -> None:
        self.intents: dict[str, GatewayIntent] = {}
        self.refunds: list[dict] = []
        self.refund_status = "succeeded"
        self.fail_next: Exception | None = None

    def _maybe_fail(self) -> None:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def create_intent(self, amount, currency, metadata, description=None):
        self._maybe_fail()
        intent_id = f"pi_{len(self.intents) + 1}"
        intent = GatewayIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_intent(self, intent_id):
        self._maybe_fail()
        return self.intents[intent_id]

    def refund(self, intent_id, amount=None, reason=None):
        self._maybe_fail()
        self.refunds.append({"intent_id": intent_id, "amount": amount, "reason": reason})
        return GatewayRefund(id=f"re_{len(self.refunds)}", status=self.refund_status, amount=amount or 0)

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise InvalidWebhook("Invalid signature")
        body = json.loads(payload)
        return GatewayEvent(id=body["id"], type=body["type"], data=body["data"]["object"])

    def succeed(self, intent_id: str) -> None:
        self.intents[intent_id].status = "succeeded"


@pytest.fixture
def session_factory(tmp_path):
    """A fresh file-backed SQLite database per test, shareable across threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def _add_user(session_factory, name: str, role: Role) -> User:
    session = session_factory()
    user = User(name=name, email=f"{name.lower()}@example.com", role=role.value)
    session.add(user)
    session.commit()
    session.close()
    return user


@pytest.fixture
def guest(session_factory) -> User:
    return _add_user(session_factory, "Grace", Role.GUEST)


@pytest.fixture
def other_guest(session_factory) -> User:
    return _add_user(session_factory, "Oscar", Role.GUEST)


@pytest.fixture
def host(session_factory) -> User:
    return _add_user(session_factory, "Hana", Role.HOST)


@pytest.fixture
def admin(session_factory) -> User:
    return _add_user(session_factory, "Ada", Role.ADMIN)


@pytest.fixture
def guest_actor(guest) -> Actor:
    return Actor(user_id=guest.id, role=Role.GUEST.value)


@pytest.fixture
def other_actor(other_guest) -> Actor:
    return Actor(user_id=other_guest.id, role=Role.GUEST.value)


@pytest.fixture
def host_actor(host) -> Actor:
    return Actor(user_id=host.id, role=Role.HOST.value)


@pytest.fixture
def admin_actor(admin) -> Actor:
    return Actor(user_id=admin.id, role=Role.ADMIN.value)


@pytest.fixture
def listing(session_factory, host) -> Listing:
    """Create a sample listing."""
    session = session_factory()
    item = Listing(
        host_id=host.id,
        title="Harbour Loft",
        description="Two rooms by the water",
        nightly_rate=100.0,
        max_guests=4,
    )
    session.add(item)
    session.commit()
    session.close()
    return item


@pytest.fixture
def event_bus():
    """Create a fresh event bus for each test."""
    return EventBus()


@pytest.fixture
def published(event_bus):
    """Every event published on the test bus, in order."""
    events = []
    original = event_bus.publish

    def record(event):
        events.append(event)
        original(event)

    event_bus.publish = record
    return events


@pytest.fixture
def clock():
    """Mutable "today" for the booking service."""
    return {"today": TODAY}


@pytest.fixture
def bookings(session_factory, event_bus, clock) -> BookingService:
    return BookingService(
        session_factory=session_factory,
        pricing=PricingCalculator(),
        bus=event_bus,
        today=lambda: clock["today"],
        auto_confirm=True,
    )


@pytest.fixture
def pending_bookings(session_factory, event_bus, clock) -> BookingService:
    """Booking service that leaves new bookings awaiting host approval."""
    return BookingService(
        session_factory=session_factory,
        pricing=PricingCalculator(),
        bus=event_bus,
        today=lambda: clock["today"],
        auto_confirm=False,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def payments(gateway, session_factory, pending_bookings, event_bus) -> PaymentService:
    return PaymentService(
        gateway=gateway,
        session_factory=session_factory,
        bookings=pending_bookings,
        bus=event_bus,
        currency="usd",
    )


@pytest.fixture
def listings(session_factory, bookings, event_bus) -> ListingService:
    return ListingService(session_factory=session_factory, bookings=bookings, bus=event_bus)


@pytest.fixture
def rollup(session_factory) -> RatingRollup:
    return RatingRollup(session_factory)


@pytest.fixture
def reviews(session_factory, bookings, rollup) -> ReviewService:
    return ReviewService(session_factory=session_factory, bookings=bookings, rollup=rollup)


@pytest.fixture
def book(bookings, guest_actor, listing):
    """Create a booking starting ``offset`` days after TODAY."""

    def _book(offset: int = 31, nights: int = 4, actor: Actor | None = None, service: BookingService | None = None, **kwargs):
        check_in = TODAY + timedelta(days=offset)
        return (service or bookings).create(
            actor or guest_actor,
            listing_id=listing.id,
            check_in=check_in,
            check_out=check_in + timedelta(days=nights),
            **kwargs,
        )

    return _book
