from staybook.modules.reviews.rollup import RatingRollup, RatingSummary
from staybook.modules.reviews.service import ReviewService

__all__ = ["RatingRollup", "RatingSummary", "ReviewService"]
