"""APScheduler integration for FastAPI.

Runs the position scan on a fixed interval.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from rebalancer.engine.scanner import Scanner

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "position_scan"

scheduler = AsyncIOScheduler()
_scanner: Scanner | None = None


def get_scanner() -> Scanner | None:
    return _scanner


async def run_scan():
    """Scheduler entry point; the scanner skips the tick if one is still running."""
    if _scanner is None:
        logger.warning("Scan tick with no scanner configured")
        return
    await _scanner.run_once()


def add_scan_job(interval_seconds: int):
    """Add or replace the scan job."""
    scheduler.add_job(
        run_scan,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=SCAN_JOB_ID,
        name="Position scan",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=interval_seconds,
    )
    logger.info(f"Scheduled position scan every {interval_seconds}s")


def start_scheduler(scanner: Scanner, interval_seconds: int):
    """Start the scheduler with the scan job."""
    global _scanner
    _scanner = scanner
    add_scan_job(interval_seconds)
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
    status = {
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
    if _scanner is not None:
        status.update(_scanner.status())
    return status
