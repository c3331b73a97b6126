"""
Background job scheduling with APScheduler.

Each component that runs periodic work owns one BackgroundScheduler and
starts/stops it explicitly. Job defaults:
- max_instances=1: a job never overlaps itself
- coalesce=True: missed runs collapse into a single run
- misfire_grace_time=None: a late run still runs

Failed runs are logged by APScheduler and the job stays scheduled.

Usage:
    scheduler = create_scheduler()
    scheduler.add_job(pipeline.flush, "interval", seconds=60, id="telemetry-flush")
    scheduler.start()
    run_job_now(scheduler, "telemetry-flush")  # don't wait for the next tick
    scheduler.shutdown(wait=True)
"""

import logging
from datetime import datetime, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


JOB_DEFAULTS = {
    "max_instances": 1,
    "coalesce": True,
    "misfire_grace_time": None,
}


def create_scheduler() -> BackgroundScheduler:
    """New (not yet started) scheduler with the shared job defaults, in UTC."""
    return BackgroundScheduler(job_defaults=JOB_DEFAULTS, timezone=timezone.utc)


def run_job_now(scheduler: BackgroundScheduler, job_id: str) -> bool:
    """
    Move a job's next run time to now.

    Returns:
        True if the job was rescheduled, False when the scheduler is not
        running or has no such job
    """
    if not scheduler.running:
        return False

    try:
        scheduler.modify_job(job_id, next_run_time=datetime.now(timezone.utc))
    except JobLookupError:
        logger.warning(f"Scheduled job not found: {job_id}", extra={"job_id": job_id})
        return False
    return True
