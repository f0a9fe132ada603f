"""Periodic workers.

Runs the sessionizer, the staleness sweep and the vacation nudge in-process
with APScheduler.  Started and stopped by the FastAPI lifespan in main.py when
SCHEDULER_ENABLED=1.  Each run opens its own database session; the workers
share nothing but the database.

Manual trigger from a shell or script:
    run_job_now("sessionize")

The admin job endpoints in main.py call the same functions on the request
session instead, so they share its dependency overrides.
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import db as db_module
from .sessionizer import process_batch, sweep_stale_activities
from .settings import (
    NUDGE_INTERVAL_SECONDS,
    NUDGE_USER_LIMIT,
    SESSIONIZE_BATCH_LIMIT,
    SESSIONIZE_INTERVAL_SECONDS,
    STALE_SWEEP_INTERVAL_SECONDS,
)
from .streaks import nudge_all_users

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")


def sessionize_job():
    db = db_module.SessionLocal()
    try:
        return process_batch(db, limit=SESSIONIZE_BATCH_LIMIT)
    finally:
        db.close()


def sweep_job():
    db = db_module.SessionLocal()
    try:
        return sweep_stale_activities(db)
    finally:
        db.close()


def nudge_job():
    db = db_module.SessionLocal()
    try:
        bridged = nudge_all_users(db, limit=NUDGE_USER_LIMIT)
        if bridged:
            logger.info("Vacation nudge bridged %d streaks", bridged)
        return bridged
    finally:
        db.close()


JOBS = {
    "sessionize": (sessionize_job, SESSIONIZE_INTERVAL_SECONDS, "Sessionize raw events"),
    "sweep_stale": (sweep_job, STALE_SWEEP_INTERVAL_SECONDS, "Sweep stale activities"),
    "nudge": (nudge_job, NUDGE_INTERVAL_SECONDS, "Vacation streak nudge"),
}


def setup_scheduled_jobs() -> None:
    for job_id, (func, seconds, name) in JOBS.items():
        scheduler.add_job(
            func,
            IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Scheduled %s every %ds", job_id, seconds)


def start_scheduler() -> None:
    if scheduler.running:
        logger.warning("Scheduler already running")
        return
    setup_scheduled_jobs()
    scheduler.start()
    logger.info("Scheduler started")


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def run_job_now(name: str):
    """Run a job synchronously and return its result.

    Raises KeyError for an unknown job name.
    """
    func, _, _ = JOBS[name]
    logger.info("Running job %s on demand", name)
    return func()
