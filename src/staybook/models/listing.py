"""Listing model."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staybook.database import Base

RATING_CATEGORIES = (
    "cleanliness",
    "accuracy",
    "check_in",
    "communication",
    "location",
    "value",
)


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    nightly_rate: Mapped[float] = mapped_column(Float, nullable=False)
    max_guests: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Aggregate rating, written only by the rating rollup
    rating: Mapped[float] = mapped_column(Float, default=0.0)
    review_count: Mapped[int] = mapped_column(Integer, default=0)
    rating_cleanliness: Mapped[float] = mapped_column(Float, default=0.0)
    rating_accuracy: Mapped[float] = mapped_column(Float, default=0.0)
    rating_check_in: Mapped[float] = mapped_column(Float, default=0.0)
    rating_communication: Mapped[float] = mapped_column(Float, default=0.0)
    rating_location: Mapped[float] = mapped_column(Float, default=0.0)
    rating_value: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    host: Mapped["User"] = relationship()  # noqa: F821

    def __repr__(self) -> str:
        return f"<Listing id={self.id} title={self.title!r}>"

    @property
    def rating_breakdown(self) -> dict[str, float]:
        return {name: getattr(self, f"rating_{name}") for name in RATING_CATEGORIES}
