"""Booking and booked-night models."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staybook.database import Base


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


OPEN_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)
TERMINAL_STATUSES = (BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Plain reference: bookings outlive their listing
    listing_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    guest_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    host_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)
    adults: Mapped[int] = mapped_column(Integer, default=1)
    children: Mapped[int] = mapped_column(Integer, default=0)
    infants: Mapped[int] = mapped_column(Integer, default=0)
    guest_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Price breakdown, whole currency units
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)
    nights: Mapped[int] = mapped_column(Integer, nullable=False)
    service_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    cleaning_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    taxes: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.PENDING.value)  # pending, confirmed, cancelled, completed
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)  # pending, paid, failed, refunded
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cancelled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None when cancelled by the system
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    booked_nights: Mapped[list["BookedNight"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Booking id={self.id} listing_id={self.listing_id} "
            f"status={self.status!r} {self.check_in}..{self.check_out}>"
        )

    @property
    def total_guests(self) -> int:
        return (self.adults or 0) + (self.children or 0) + (self.infants or 0)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        cancellation = None
        if self.cancelled_at or self.refund_amount is not None:
            cancellation = {
                "cancelledBy": self.cancelled_by,
                "cancelledAt": self.cancelled_at.isoformat() if self.cancelled_at else None,
                "reason": self.cancellation_reason,
                "refundAmount": self.refund_amount,
            }
        return {
            "id": self.id,
            "listingId": self.listing_id,
            "guestId": self.guest_id,
            "hostId": self.host_id,
            "checkIn": self.check_in.isoformat(),
            "checkOut": self.check_out.isoformat(),
            "guests": {"adults": self.adults, "children": self.children, "infants": self.infants},
            "guestInfo": self.guest_info,
            "specialRequests": self.special_requests,
            "priceBreakdown": {
                "basePrice": self.base_price,
                "nights": self.nights,
                "serviceFee": self.service_fee,
                "cleaningFee": self.cleaning_fee,
                "taxes": self.taxes,
            },
            "totalPrice": self.total_price,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "cancellation": cancellation,
        }


class BookedNight(Base):
    """One claimed night of an open booking.

    The unique key over (listing_id, night) is what makes overlapping open
    bookings impossible at the database level.
    """

    __tablename__ = "booked_nights"
    __table_args__ = (UniqueConstraint("listing_id", "night", name="uq_booked_night"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(Integer, nullable=False)
    night: Mapped[date] = mapped_column(Date, nullable=False)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="booked_nights")

    def __repr__(self) -> str:
        return f"<BookedNight listing_id={self.listing_id} night={self.night}>"


def nights_between(check_in: date, check_out: date) -> list[date]:
    """Every night of the half-open stay [check_in, check_out)."""
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]
