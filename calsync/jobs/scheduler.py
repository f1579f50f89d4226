"""APScheduler setup for background jobs."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calsync.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        "calsync.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="periodic_sync",
        name="Periodic Calendar Sync",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.add_job(
        "calsync.jobs.sync_job:refresh_expiring_tokens",
        trigger=IntervalTrigger(minutes=settings.token_refresh_minutes),
        id="token_refresh",
        name="Token Refresh",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")
