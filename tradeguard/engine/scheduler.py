"""APScheduler integration for FastAPI.

Runs the reconciliation tick on a fixed interval.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradeguard.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

RECONCILE_JOB_ID = "reconcile"


def add_reconcile_job(interval_minutes: int | None = None):
    """Add or replace the reconciliation job."""
    from tradeguard.engine.reconciliation import run_reconciliation_tick

    minutes = interval_minutes or settings.reconcile_interval_minutes
    scheduler.add_job(
        run_reconciliation_tick,
        trigger=IntervalTrigger(minutes=minutes),
        id=RECONCILE_JOB_ID,
        name="Reconcile open positions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled reconciliation every {minutes}m")


def start_scheduler():
    add_reconcile_job()
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
