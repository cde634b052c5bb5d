"""APScheduler job definitions for the reconciliation jobs."""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from nft_tracker.worker.tasks import SyncTaskRunner

logger = logging.getLogger(__name__)


async def _startup_sync(runner: SyncTaskRunner):
    """One-shot run of both jobs shortly after boot."""
    await runner.run_listing_sync(trigger="startup")
    await runner.run_ownership_sync(trigger="startup")


def setup_scheduler(runner: SyncTaskRunner, settings) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Listing sync every settings.listing_sync_interval_minutes
    - Ownership sync every settings.ownership_sync_interval_minutes
    - Optional start-up run after settings.sync_startup_delay_seconds

    Args:
        runner: Task runner owning the per-job guards
        settings: Application settings

    Returns:
        Configured scheduler instance (not started)
    """
    scheduler = AsyncIOScheduler()
    listing_interval = max(1, int(settings.listing_sync_interval_minutes))
    ownership_interval = max(1, int(settings.ownership_sync_interval_minutes))

    scheduler.add_job(
        runner.run_listing_sync,
        IntervalTrigger(minutes=listing_interval),
        kwargs={"trigger": "scheduled"},
        id="listing_sync",
        name="Reconcile marketplace listings",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.run_ownership_sync,
        IntervalTrigger(minutes=ownership_interval),
        kwargs={"trigger": "scheduled"},
        id="ownership_sync",
        name="Reconcile token ownership",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    if settings.sync_run_on_startup:
        run_at = datetime.now() + timedelta(seconds=settings.sync_startup_delay_seconds)
        scheduler.add_job(
            _startup_sync,
            DateTrigger(run_date=run_at),
            args=[runner],
            id="startup_sync",
            name="Initial sync after start-up",
            replace_existing=True,
        )

    logger.info(
        "Scheduler configured: listing sync every %d minutes, ownership sync every %d minutes, "
        "start-up sync %s",
        listing_interval,
        ownership_interval,
        f"in {settings.sync_startup_delay_seconds}s" if settings.sync_run_on_startup else "disabled",
    )

    return scheduler
