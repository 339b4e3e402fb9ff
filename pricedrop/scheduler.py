"""
Scheduled jobs for the price reduction service.

The AsyncIOScheduler runs inside the FastAPI process (see main.py):
- the price reduction tick, on PRICE_REDUCTION_SCHEDULE
- the listing mirror sync, on LISTING_SYNC_SCHEDULE
- the daily sync error retention cleanup
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from pricedrop.core.config import get_settings
from pricedrop.database import async_session
from pricedrop.models.types import utcnow
from pricedrop.services.ebay.importer import build_listing_sync
from pricedrop.services.outcome_ledger import OutcomeLedger
from pricedrop.services.price_reduction_service import TickReport, build_price_reduction_scheduler

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

PRICE_REDUCTION_JOB_ID = "price_reduction_tick"
LISTING_SYNC_JOB_ID = "listing_sync"
CLEANUP_JOB_ID = "cleanup_sync_errors"


async def price_reduction_task(
    account_id: Optional[str] = None,
    listing_id: Optional[int] = None,
    force: bool = False,
    trigger: str = "scheduled",
) -> TickReport:
    """Run one price reduction tick"""
    logger.info(f"=== PRICE REDUCTION TICK STARTING ({trigger}) ===")
    service = build_price_reduction_scheduler(async_session)
    report = await service.run_tick(account_id=account_id, listing_id=listing_id, force=force, trigger=trigger)
    logger.info(f"Price reduction tick {report.tick_id} done: {report.counts}")
    return report


async def listing_sync_task():
    """Mirror active eBay listings for every connected account"""
    logger.info("=== LISTING SYNC STARTING ===")
    summary = await build_listing_sync(async_session).sync_all_accounts()
    logger.info(f"Listing sync completed for {len(summary)} accounts")
    return summary


async def cleanup_sync_errors_task(now: Optional[datetime] = None, session_factory=None) -> int:
    """Purge sync errors past the retention window. Price history is kept forever."""
    settings = get_settings()
    cutoff = (now or utcnow()) - timedelta(days=settings.SYNC_ERROR_RETENTION_DAYS)
    async with (session_factory or async_session)() as db:
        deleted = await OutcomeLedger(db).purge_errors(cutoff)
        await db.commit()
    logger.info(f"Cleanup completed: {deleted} sync errors older than {cutoff.isoformat()} deleted")
    return deleted


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.info(f"Job {event.job_id} executed successfully at {utcnow().isoformat()}")


def create_scheduler() -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=settings.PRICE_REDUCTION_TIMEZONE)
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    if settings.SCHEDULER_ENABLED:
        scheduler.add_job(
            price_reduction_task,
            CronTrigger.from_crontab(settings.PRICE_REDUCTION_SCHEDULE, timezone=settings.PRICE_REDUCTION_TIMEZONE),
            id=PRICE_REDUCTION_JOB_ID,
            name="Price Reduction Tick",
            replace_existing=True,
            max_instances=1,  # Only one tick at a time
            misfire_grace_time=3600,
            coalesce=True,
        )
        logger.info(
            f"Price reduction job added with schedule: {settings.PRICE_REDUCTION_SCHEDULE} "
            f"({settings.PRICE_REDUCTION_TIMEZONE})"
        )

        scheduler.add_job(
            listing_sync_task,
            CronTrigger.from_crontab(settings.LISTING_SYNC_SCHEDULE, timezone=settings.PRICE_REDUCTION_TIMEZONE),
            id=LISTING_SYNC_JOB_ID,
            name="Listing Sync",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=3600,
        )
        logger.info(f"Listing sync job added with schedule: {settings.LISTING_SYNC_SCHEDULE}")

        scheduler.add_job(
            cleanup_sync_errors_task,
            CronTrigger(hour=2, minute=0, timezone=settings.PRICE_REDUCTION_TIMEZONE),
            id=CLEANUP_JOB_ID,
            name="Cleanup Sync Errors",
            replace_existing=True,
            max_instances=1,
        )
        logger.info("Sync error cleanup job added for 2:00 AM daily")
    else:
        logger.info("Scheduler is disabled. Set SCHEDULER_ENABLED=true to enable")

    return scheduler


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return scheduler


async def start_scheduler():
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Active scheduled jobs: {len(jobs)}")
            for job in jobs:
                logger.info(f"  - {job.name}: {job.trigger}")
        else:
            logger.info("No scheduled jobs configured")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Get current scheduler status and job information"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = []
    for job in scheduler.get_jobs():
        jobs_info.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })

    # APScheduler 3.x: 0 stopped, 1 running, 2 paused
    state = {0: "stopped", 1: "running", 2: "paused"}.get(scheduler.state, "unknown")
    return {"status": state, "jobs": jobs_info}
