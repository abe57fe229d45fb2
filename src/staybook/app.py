"""FastAPI application exposing the booking engine as a JSON API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from staybook.config import section
from staybook.database import init_db
from staybook.errors import BookingError
from staybook.models.user import Role
from staybook.modules.bookings import Actor, BookingService
from staybook.modules.listings import ListingService
from staybook.modules.notifications import BookingNotifier
from staybook.modules.payments import InvalidWebhook, PaymentService
from staybook.modules.reviews import ReviewService
from staybook.scheduler import create_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting StayBook...")
    init_db()
    notifier = BookingNotifier()
    notifier.setup_event_handlers()

    scheduler = None
    if section("scheduler").get("enabled", True):
        scheduler = create_scheduler()
        scheduler.start()
        logger.info("Scheduler started.")

    yield

    if scheduler is not None:
        scheduler.shutdown()
    notifier.remove_event_handlers()
    logger.info("StayBook shut down.")


app = FastAPI(title="StayBook", lifespan=lifespan)


# --- Errors ---


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "reason": exc.reason, "message": exc.message},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "reason": "validation_failed", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "reason": "server_error", "message": "Server error"},
    )


# --- Dependencies ---


def get_actor(
    x_user_id: int | None = Header(default=None),
    x_user_role: str = Header(default=Role.GUEST.value),
) -> Actor:
    """Principal supplied by the upstream authentication layer."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if x_user_role not in {role.value for role in Role}:
        raise HTTPException(status_code=401, detail="Unknown role")
    return Actor(user_id=x_user_id, role=x_user_role)


def get_booking_service() -> BookingService:
    return BookingService()


def get_payment_service() -> PaymentService:
    return PaymentService()


def get_listing_service() -> ListingService:
    return ListingService()


def get_review_service() -> ReviewService:
    return ReviewService()


# --- Request bodies ---


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GuestCounts(_CamelModel):
    adults: int = Field(default=1, ge=0)
    children: int = Field(default=0, ge=0)
    infants: int = Field(default=0, ge=0)


class GuestCountsPatch(_CamelModel):
    adults: int | None = Field(default=None, ge=0)
    children: int | None = Field(default=None, ge=0)
    infants: int | None = Field(default=None, ge=0)


class BookingCreate(_CamelModel):
    listing_id: int = Field(alias="listingId")
    check_in: date = Field(alias="checkIn")
    check_out: date = Field(alias="checkOut")
    guests: GuestCounts = Field(default_factory=GuestCounts)
    guest_info: dict[str, Any] | None = Field(default=None, alias="guestInfo")
    special_requests: str | None = Field(default=None, alias="specialRequests")


class BookingUpdate(_CamelModel):
    status: str | None = None
    check_in: date | None = Field(default=None, alias="checkIn")
    check_out: date | None = Field(default=None, alias="checkOut")
    guests: GuestCountsPatch | None = None
    guest_info: dict[str, Any] | None = Field(default=None, alias="guestInfo")
    special_requests: str | None = Field(default=None, alias="specialRequests")
    reason: str | None = None

    def to_patch(self) -> dict[str, Any]:
        patch = self.model_dump(exclude_unset=True, exclude_none=True, exclude={"guests"})
        if self.guests is not None:
            patch.update(self.guests.model_dump(exclude_none=True))
        return patch


class CancelRequest(_CamelModel):
    reason: str | None = None


class IntentRequest(_CamelModel):
    booking_id: int = Field(alias="bookingId")


class SyncRequest(_CamelModel):
    payment_intent_id: str | None = Field(default=None, alias="paymentIntentId")


class RefundRequest(_CamelModel):
    booking_id: int = Field(alias="bookingId")
    amount: float | None = Field(default=None, gt=0)
    reason: str | None = None


class ReviewCategories(_CamelModel):
    cleanliness: int = Field(ge=1, le=5)
    accuracy: int = Field(ge=1, le=5)
    check_in: int = Field(ge=1, le=5, alias="checkIn")
    communication: int = Field(ge=1, le=5)
    location: int = Field(ge=1, le=5)
    value: int = Field(ge=1, le=5)


class ReviewCategoriesPatch(_CamelModel):
    cleanliness: int | None = Field(default=None, ge=1, le=5)
    accuracy: int | None = Field(default=None, ge=1, le=5)
    check_in: int | None = Field(default=None, ge=1, le=5, alias="checkIn")
    communication: int | None = Field(default=None, ge=1, le=5)
    location: int | None = Field(default=None, ge=1, le=5)
    value: int | None = Field(default=None, ge=1, le=5)


class ReviewCreate(_CamelModel):
    booking_id: int = Field(alias="bookingId")
    title: str = Field(max_length=100)
    comment: str = Field(max_length=1000)
    categories: ReviewCategories


class ReviewUpdate(_CamelModel):
    title: str | None = Field(default=None, max_length=100)
    comment: str | None = Field(default=None, max_length=1000)
    categories: ReviewCategoriesPatch | None = None


# --- Bookings ---


@app.post("/api/bookings", status_code=201)
async def create_booking(
    body: BookingCreate,
    actor: Actor = Depends(get_actor),
    bookings: BookingService = Depends(get_booking_service),
):
    """Create new booking."""
    booking = bookings.create(
        actor,
        listing_id=body.listing_id,
        check_in=body.check_in,
        check_out=body.check_out,
        adults=body.guests.adults,
        children=body.guests.children,
        infants=body.guests.infants,
        guest_info=body.guest_info,
        special_requests=body.special_requests,
    )
    return {"success": True, "data": booking.to_dict()}


@app.get("/api/bookings")
async def list_bookings(
    actor: Actor = Depends(get_actor),
    bookings: BookingService = Depends(get_booking_service),
):
    """Bookings visible to the caller."""
    items = bookings.list_for(actor)
    return {"success": True, "count": len(items), "data": [b.to_dict() for b in items]}


@app.get("/api/bookings/{booking_id}")
async def get_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.get(actor, booking_id)
    return {"success": True, "data": booking.to_dict()}


@app.put("/api/bookings/{booking_id}")
async def update_booking(
    booking_id: int,
    body: BookingUpdate,
    actor: Actor = Depends(get_actor),
    bookings: BookingService = Depends(get_booking_service),
):
    """Patch a booking; an embedded status is treated as that transition."""
    booking = bookings.update(actor, booking_id, body.to_patch())
    return {"success": True, "data": booking.to_dict()}


@app.post("/api/bookings/{booking_id}/confirm")
async def confirm_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.confirm(actor, booking_id)
    return {"success": True, "data": booking.to_dict()}


@app.delete("/api/bookings/{booking_id}")
async def cancel_booking(
    booking_id: int,
    body: CancelRequest | None = None,
    actor: Actor = Depends(get_actor),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.cancel(actor, booking_id, reason=body.reason if body else None)
    return {"success": True, "message": "Booking cancelled successfully", "data": booking.to_dict()}


# --- Payments ---


@app.post("/api/payments/intent")
def create_payment_intent(
    body: IntentRequest,
    actor: Actor = Depends(get_actor),
    payments: PaymentService = Depends(get_payment_service),
):
    client_secret = payments.create_intent(actor, body.booking_id)
    return {"success": True, "clientSecret": client_secret}


@app.post("/api/payments/webhook")
async def payment_webhook(
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
):
    """Gateway push notifications. Acknowledged unless the signature is bad."""
    payload = await request.body()
    try:
        return await run_in_threadpool(payments.handle_webhook, payload, request.headers.get("stripe-signature"))
    except InvalidWebhook as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        return JSONResponse(status_code=400, content={"received": False, "message": str(exc)})


@app.post("/api/payments/{booking_id}/sync")
def sync_payment_status(
    booking_id: int,
    body: SyncRequest | None = None,
    actor: Actor = Depends(get_actor),
    payments: PaymentService = Depends(get_payment_service),
):
    """Client-side fallback when the webhook has not arrived yet."""
    booking = payments.sync_status(actor, booking_id, body.payment_intent_id if body else None)
    return {
        "success": True,
        "message": "Payment status updated successfully",
        "data": {"booking": booking.to_dict(), "paymentStatus": booking.payment_status},
    }


@app.post("/api/payments/refund")
def refund_payment(
    body: RefundRequest,
    actor: Actor = Depends(get_actor),
    payments: PaymentService = Depends(get_payment_service),
):
    result = payments.refund(actor, body.booking_id, amount=body.amount, reason=body.reason)
    return {"success": True, "message": "Refund processed successfully", "data": result.to_dict()}


# --- Listings ---


@app.delete("/api/listings/{listing_id}")
async def delete_listing(
    listing_id: int,
    actor: Actor = Depends(get_actor),
    listings: ListingService = Depends(get_listing_service),
):
    cancelled = listings.delete_listing(actor, listing_id)
    return {
        "success": True,
        "message": "Listing deleted and associated bookings have been cancelled.",
        "cancelledBookings": [b.id for b in cancelled],
    }


# --- Reviews ---


@app.post("/api/reviews", status_code=201)
async def create_review(
    body: ReviewCreate,
    actor: Actor = Depends(get_actor),
    reviews: ReviewService = Depends(get_review_service),
):
    review = reviews.create(
        actor,
        booking_id=body.booking_id,
        title=body.title,
        comment=body.comment,
        categories=body.categories.model_dump(),
    )
    return {"success": True, "data": review.to_dict()}


@app.put("/api/reviews/{review_id}")
async def update_review(
    review_id: int,
    body: ReviewUpdate,
    actor: Actor = Depends(get_actor),
    reviews: ReviewService = Depends(get_review_service),
):
    categories = body.categories.model_dump(exclude_none=True) if body.categories else None
    review = reviews.update(actor, review_id, title=body.title, comment=body.comment, categories=categories)
    return {"success": True, "data": review.to_dict()}


@app.delete("/api/reviews/{review_id}")
async def delete_review(
    review_id: int,
    actor: Actor = Depends(get_actor),
    reviews: ReviewService = Depends(get_review_service),
):
    reviews.delete(actor, review_id)
    return {"success": True, "message": "Review deleted successfully"}


@app.get("/health")
async def health():
    return {"status": "ok"}


def main() -> None:
    """Entry point for running the app."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db()
    logger.info("Database initialized.")

    uvicorn.run(
        "staybook.app:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
