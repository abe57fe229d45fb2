"""Review create/update/delete, each followed by a rating rollup."""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from staybook.database import get_session
from staybook.errors import InvalidState, NotFound, Unauthorized
from staybook.models.booking import BookingStatus
from staybook.models.listing import RATING_CATEGORIES
from staybook.models.review import Review
from staybook.modules.bookings import Actor, BookingService
from staybook.modules.reviews.rollup import RatingRollup, round_rating

logger = logging.getLogger(__name__)


def overall_rating(categories: dict[str, int]) -> float:
    """Mean of the six category scores, one decimal."""
    return round_rating(sum(categories[name] for name in RATING_CATEGORIES) / len(RATING_CATEGORIES))


def _validate_categories(categories: dict[str, int]) -> dict[str, int]:
    missing = [name for name in RATING_CATEGORIES if name not in categories]
    if missing:
        raise ValueError(f"Missing rating categories: {', '.join(missing)}")
    for name in RATING_CATEGORIES:
        score = categories[name]
        if not 1 <= score <= 5:
            raise ValueError(f"Rating for {name} must be between 1 and 5")
    return {name: int(categories[name]) for name in RATING_CATEGORIES}


class ReviewService:
    """Guest reviews of completed stays."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        bookings: BookingService | None = None,
        rollup: RatingRollup | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session
        self._bookings = bookings or BookingService(session_factory=self._session_factory)
        self._rollup = rollup or RatingRollup(self._session_factory)

    def create(
        self,
        actor: Actor,
        booking_id: int,
        title: str,
        comment: str,
        categories: dict[str, int],
    ) -> Review:
        scores = _validate_categories(categories)
        booking = self._bookings.get(actor, booking_id)
        if booking.guest_id != actor.user_id:
            raise Unauthorized("Not authorized to review this booking")
        if booking.status != BookingStatus.COMPLETED.value:
            raise InvalidState("Can only review completed bookings")

        session = self._session_factory()
        try:
            existing = session.scalars(select(Review).where(Review.booking_id == booking_id)).first()
            if existing is not None:
                raise InvalidState("Review already exists for this booking")
            review = Review(
                listing_id=booking.listing_id,
                booking_id=booking_id,
                user_id=actor.user_id,
                title=title,
                comment=comment,
                rating=overall_rating(scores),
                **scores,
            )
            session.add(review)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise InvalidState("Review already exists for this booking") from None
        finally:
            session.close()

        logger.info("Review %s created for booking %s", review.id, booking_id)
        self._rollup.recompute_quietly(review.listing_id)
        return review

    def update(
        self,
        actor: Actor,
        review_id: int,
        title: str | None = None,
        comment: str | None = None,
        categories: dict[str, int] | None = None,
    ) -> Review:
        session = self._session_factory()
        try:
            review = self._load(session, review_id)
            if review.user_id != actor.user_id:
                raise Unauthorized("Not authorized to update this review")
            if title is not None:
                review.title = title
            if comment is not None:
                review.comment = comment
            if categories is not None:
                scores = _validate_categories({**review.categories, **categories})
                for name, score in scores.items():
                    setattr(review, name, score)
                review.rating = overall_rating(scores)
            session.commit()
        finally:
            session.close()

        self._rollup.recompute_quietly(review.listing_id)
        return review

    def delete(self, actor: Actor, review_id: int) -> None:
        session = self._session_factory()
        try:
            review = self._load(session, review_id)
            if review.user_id != actor.user_id and not actor.is_admin:
                raise Unauthorized("Not authorized to delete this review")
            listing_id = review.listing_id
            session.delete(review)
            session.commit()
        finally:
            session.close()

        logger.info("Review %s deleted", review_id)
        self._rollup.recompute_quietly(listing_id)

    def _load(self, session: Session, review_id: int) -> Review:
        review = session.get(Review, review_id)
        if review is None:
            raise NotFound("Review not found")
        return review
