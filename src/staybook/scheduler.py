"""APScheduler setup for periodic tasks."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from staybook.config import section

logger = logging.getLogger(__name__)


def create_scheduler() -> BackgroundScheduler:
    """Create and configure the background scheduler."""
    from staybook.modules.bookings import BookingService

    scheduler = BackgroundScheduler()
    sched_config = section("scheduler")

    bookings = BookingService()

    # Stays are also completed lazily on read; this sweep catches the rest
    scheduler.add_job(
        bookings.complete_elapsed,
        "interval",
        minutes=sched_config.get("completion_interval", 60),
        id="complete_elapsed",
        name="Complete Elapsed Stays",
    )

    logger.info("Scheduler configured with %d jobs", len(scheduler.get_jobs()))
    return scheduler
