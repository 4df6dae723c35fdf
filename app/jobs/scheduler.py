"""
APScheduler Configuration

Background job scheduler for the maintenance jobs registered in
``app.jobs.registry``. Intervals come from settings.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings
from app.jobs.registry import run_job

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE,
)

# (job name, display name, interval in minutes)
SCHEDULED_JOBS = [
    ("process_sync_queue", "Process Shopify Sync Queue", settings.SYNC_QUEUE_INTERVAL_MINUTES),
    ("retry_failed_bookings", "Retry Failed Courier Bookings", settings.COURIER_RETRY_INTERVAL_MINUTES),
    ("scheduled_tracking_update", "Courier Tracking Update", settings.TRACKING_UPDATE_INTERVAL_MINUTES),
    ("check_stuck_orders", "Check Stuck Orders", settings.ALERT_CHECK_INTERVAL_MINUTES),
    ("check_overdue_returns", "Check Overdue Returns", settings.ALERT_CHECK_INTERVAL_MINUTES),
    ("check_low_stock", "Check Low Stock", settings.ALERT_CHECK_INTERVAL_MINUTES),
]


async def run_scheduled_job(job_name: str):
    """
    Wrapper to run a registered job from the scheduler.

    A failing run is logged and retried on the next tick.
    """
    try:
        await run_job(job_name)
    except Exception as e:
        logger.exception(f"Job '{job_name}' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        # Importing the job modules registers them
        from app.jobs import sync_jobs, courier_jobs, alert_jobs  # noqa: F401

        for job_id, name, minutes in SCHEDULED_JOBS:
            scheduler.add_job(
                run_scheduled_job,
                'interval',
                minutes=minutes,
                args=[job_id],
                id=job_id,
                name=name,
                replace_existing=True,
            )

        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
