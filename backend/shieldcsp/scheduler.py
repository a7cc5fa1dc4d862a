# shieldcsp/scheduler.py
"""
Background Scheduler for the Scan Queue
────────────────────────────────────────
Uses APScheduler to drive the queue from inside the API process:

    queue_worker     every QUEUE_PROCESS_INTERVAL_SECONDS (default 60s)
                     → process up to QUEUE_BATCH_SIZE jobs
    schedule_sweep   every SCHEDULE_SWEEP_INTERVAL_MINUTES (default 60m)
                     → enqueue due automated scans

Setup in the app factory:
    from shieldcsp.scheduler import init_scheduler
    init_scheduler(app)

Dedicated workers can skip this and call POST /queue/process instead.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shieldcsp.errors import QueueUnavailableError

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def _process_queue(app):
    """Run one batch of queued scans."""
    with app.app_context():
        from shieldcsp import services

        try:
            processed = services.process_queue(batch_size=app.config["QUEUE_BATCH_SIZE"])
        except QueueUnavailableError as e:
            logger.warning(f"Queue worker skipped: {e}")
            return

        if processed:
            logger.info(f"Queue worker processed {processed} job(s)")


def _sweep_schedules(app):
    """Enqueue scans for domains whose frequency interval has elapsed."""
    with app.app_context():
        from shieldcsp import services

        try:
            scheduled = services.schedule_automated_scans()
        except QueueUnavailableError as e:
            logger.warning(f"Schedule sweep skipped: {e}")
            return

        if scheduled:
            logger.info(f"Schedule sweep enqueued {scheduled} scan(s)")


def init_scheduler(app):
    """Initialize and start the background scheduler."""
    global _scheduler

    if _scheduler is not None:
        logger.info("Scheduler already running")
        return

    _scheduler = BackgroundScheduler(daemon=True)

    interval_s = app.config["QUEUE_PROCESS_INTERVAL_SECONDS"]
    sweep_m = app.config["SCHEDULE_SWEEP_INTERVAL_MINUTES"]

    _scheduler.add_job(
        func=lambda: _process_queue(app),
        trigger=IntervalTrigger(seconds=interval_s),
        id="scan_queue_worker",
        name="Process queued scans",
        replace_existing=True,
        max_instances=1,  # Prevent overlapping runs
    )

    _scheduler.add_job(
        func=lambda: _sweep_schedules(app),
        trigger=IntervalTrigger(minutes=sweep_m),
        id="scan_schedule_sweep",
        name="Enqueue automated scans",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.start()
    logger.info(
        f"Background scheduler started (queue every {interval_s}s, sweep every {sweep_m}m)"
    )


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
