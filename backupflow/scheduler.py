"""
APScheduler daemon for unattended backups.

Runs the same due-check as the ``check-auto-backup`` command on a fixed
interval, in-process, for hosts without cron.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from backupflow.backup.executor import check_auto_backup
from backupflow.backup.lock import LockConflictError

logger = logging.getLogger(__name__)

AUTO_BACKUP_JOB_ID = 'auto_backup_check'

# Global scheduler instance and settings reference
scheduler = None
daemon_settings = None


def init_scheduler(settings, interval_minutes: int = None):
    """
    Initialize and configure APScheduler.

    Args:
        settings: Config instance
        interval_minutes: Minutes between due-checks (defaults to SCHEDULER_CHECK_MINUTES)
    """
    global scheduler, daemon_settings

    if scheduler is not None:
        return scheduler

    daemon_settings = settings
    interval_minutes = interval_minutes or settings.SCHEDULER_CHECK_MINUTES

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one check at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=settings.SCHEDULER_TIMEZONE
    )

    # First check shortly after startup, then every interval
    scheduler.add_job(
        func=_check_auto_backup_wrapper,
        trigger=IntervalTrigger(minutes=interval_minutes, timezone=settings.SCHEDULER_TIMEZONE),
        id=AUTO_BACKUP_JOB_ID,
        name='Automatic backup check',
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=5),
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the scheduler; blocks until shutdown.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled {job.id}: {job.name} ({job.trigger})")

    logger.info("Scheduler starting (Ctrl+C to stop)")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


def _check_auto_backup_wrapper():
    """
    Run a due-check from the scheduler.

    Nothing escapes: a failing check must not stop the daemon.
    """
    global daemon_settings

    try:
        report = check_auto_backup(daemon_settings, trigger='scheduled')
        if report is None:
            logger.debug("Scheduled check: no backup due")
        else:
            logger.info(f"Scheduled backup finished with status: {report.status.value}")
    except LockConflictError as e:
        logger.warning(f"Scheduled check skipped: {e}")
    except Exception:
        logger.exception("Scheduled backup check failed")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []
    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })
    return jobs
