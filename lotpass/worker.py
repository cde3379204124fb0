"""Scheduler process: reclaims expired pending registrations on a fixed interval.

Run with: python -m lotpass.worker
"""

import logging

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .clock import Clock
from .config import configure_logging, get_settings
from .db import Base, SessionLocal, engine
from .sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "sweep_expired_registrations"


def run_sweep(sweeper: ExpirationSweeper) -> None:
    try:
        report = sweeper.sweep()
        if report.errors:
            logger.warning("sweep finished with %d row errors, they retry next run", report.errors)
    except Exception:
        # the next scheduled run retries; never let the job die
        logger.exception("sweep run failed")


def schedule_sweeps(scheduler: BaseScheduler, sweeper: ExpirationSweeper, interval_minutes: int) -> None:
    scheduler.add_job(
        run_sweep,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[sweeper],
        id=SWEEP_JOB_ID,
        name="Cleanup expired pending registrations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    Base.metadata.create_all(bind=engine)

    sweeper = ExpirationSweeper(SessionLocal, Clock())
    scheduler = BlockingScheduler(timezone="UTC")
    schedule_sweeps(scheduler, sweeper, settings.SWEEP_INTERVAL_MINUTES)

    logger.info("sweeping expired registrations every %d minutes", settings.SWEEP_INTERVAL_MINUTES)
    run_sweep(sweeper)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("worker stopped")


if __name__ == "__main__":
    main()
