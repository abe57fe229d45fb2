"""Lightweight in-process pub/sub event bus."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_UPDATED = "booking_updated"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    LISTING_DELETED = "listing_deleted"


@dataclass
class Event:
    event_type: EventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Type for subscriber callbacks
Subscriber = Callable[[Event], None]


class EventBus:
    """Simple synchronous pub/sub event bus."""

    def __init__(self) -> None:
        self._subscribers: dict[EventType, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: EventType, callback: Subscriber) -> None:
        """Register a callback for an event type."""
        self._subscribers[event_type].append(callback)
        logger.debug("Subscribed %s to %s", getattr(callback, "__name__", callback), event_type.value)

    def unsubscribe(self, event_type: EventType, callback: Subscriber) -> None:
        """Remove a previously registered callback, if present."""
        if callback in self._subscribers.get(event_type, []):
            self._subscribers[event_type].remove(callback)

    def publish(self, event: Event) -> None:
        """Publish an event to all subscribers.

        Subscribers are fire-and-forget: a failing subscriber is logged and
        never affects the publisher or the remaining subscribers.
        """
        logger.info("Publishing event: %s", event.event_type.value)
        for callback in list(self._subscribers.get(event.event_type, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Error in subscriber %s for event %s",
                    getattr(callback, "__name__", callback),
                    event.event_type.value,
                )


# Global event bus instance
event_bus = EventBus()
