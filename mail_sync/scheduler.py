"""
APScheduler job runner for periodic mailbox sync.
"""

import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mail_sync.config import settings
from mail_sync.core.logging import get_logger

log = get_logger(__name__)

# Global scheduler instance
_scheduler: BackgroundScheduler | None = None

# Set by stop_scheduler() so a pass that is still running winds down
_stop_event = threading.Event()


def sync_all_job():
    """Scheduled job: one sync pass over every company with sync enabled."""
    from mail_sync.processors.sync import SyncProcessor

    log.info("scheduled_job_starting", job="sync_all")
    try:
        processor = SyncProcessor(stop_event=_stop_event)
        stats = processor.process()
        log.info("scheduled_job_complete", job="sync_all", **stats)
    except Exception as e:
        log.error("scheduled_job_error", job="sync_all", error=str(e))


def start_scheduler(interval_minutes: int | None = None) -> BackgroundScheduler:
    """
    Start the background sync scheduler.

    Args:
        interval_minutes: Minutes between passes (default: settings.scheduler_interval_minutes)

    Returns:
        The scheduler instance
    """
    global _scheduler

    if _scheduler is not None:
        log.warning("scheduler_already_running")
        return _scheduler

    interval_minutes = interval_minutes or settings.scheduler_interval_minutes
    _stop_event.clear()
    _scheduler = BackgroundScheduler()

    # max_instances=1 keeps two passes from racing each other
    _scheduler.add_job(
        sync_all_job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="sync_all",
        name="Sync Gmail conversations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    log.info("scheduler_started", interval_minutes=interval_minutes)

    return _scheduler


def stop_scheduler():
    """Stop the background scheduler and ask a running pass to finish early."""
    global _scheduler

    if _scheduler is not None:
        _stop_event.set()
        _scheduler.shutdown(wait=False)
        _scheduler = None
        log.info("scheduler_stopped")


def get_scheduler() -> BackgroundScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler


def run_now():
    """Manually trigger the sync job."""
    sync_all_job()
