"""Listing aggregate rating recomputation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from staybook.database import get_session
from staybook.errors import NotFound
from staybook.models.listing import RATING_CATEGORIES, Listing
from staybook.models.review import Review

logger = logging.getLogger(__name__)


def round_rating(value: float | None) -> float:
    """One decimal place, ties away from zero; None becomes 0."""
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


@dataclass
class RatingSummary:
    listing_id: int
    average: float = 0.0
    count: int = 0
    breakdown: dict[str, float] = field(default_factory=lambda: {name: 0.0 for name in RATING_CATEGORIES})


class RatingRollup:
    """Recomputes a listing's rating fields from its reviews."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or get_session

    def recompute(self, listing_id: int) -> RatingSummary:
        session = self._session_factory()
        try:
            listing = session.get(Listing, listing_id)
            if listing is None:
                raise NotFound("Listing not found")
            summary = self.summarize(session, listing_id)
            listing.rating = summary.average
            listing.review_count = summary.count
            for name, value in summary.breakdown.items():
                setattr(listing, f"rating_{name}", value)
            session.commit()
            logger.info(
                "Listing %s rating now %.1f over %d reviews",
                listing_id, summary.average, summary.count,
            )
            return summary
        finally:
            session.close()

    def summarize(self, session: Session, listing_id: int) -> RatingSummary:
        columns = [func.avg(getattr(Review, name)) for name in RATING_CATEGORIES]
        row = session.execute(
            select(func.count(Review.id), func.avg(Review.rating), *columns)
            .where(Review.listing_id == listing_id)
        ).one()
        count = row[0] or 0
        if count == 0:
            return RatingSummary(listing_id=listing_id)
        return RatingSummary(
            listing_id=listing_id,
            average=round_rating(row[1]),
            count=count,
            breakdown={
                name: round_rating(value) for name, value in zip(RATING_CATEGORIES, row[2:])
            },
        )

    def recompute_quietly(self, listing_id: int) -> RatingSummary | None:
        """Recompute, logging instead of raising. Review writes never fail on this."""
        try:
            return self.recompute(listing_id)
        except Exception:
            logger.exception("Failed to recompute rating for listing %s", listing_id)
            return None
