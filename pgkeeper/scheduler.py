"""
APScheduler configuration and job scheduling for pgkeeper.

Manages:
- The scheduled full backup (BACKUP_SCHEDULE_CRON)
- Periodic retention enforcement (RETENTION_SCHEDULE_CRON)
- Manual one-off backup triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from pgkeeper.backup.records import BackupType
from pgkeeper.services import get_services

logger = logging.getLogger(__name__)

SCHEDULED_BACKUP_JOB_ID = 'scheduled_backup'
RETENTION_JOB_ID = 'retention_cleanup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_run_scheduled_backup_wrapper,
        trigger=CronTrigger.from_crontab(app.config['BACKUP_SCHEDULE_CRON'], timezone='UTC'),
        id=SCHEDULED_BACKUP_JOB_ID,
        name='Scheduled Database Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger.from_crontab(app.config['RETENTION_SCHEDULE_CRON'], timezone='UTC'),
        id=RETENTION_JOB_ID,
        name='Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _run_scheduled_backup_wrapper():
    """Run the scheduled backup inside the app context."""
    with flask_app.app_context():
        try:
            result = get_services().require_executor().run_scheduled_backup()
            if result.success:
                logger.info(f"Scheduled backup {result.record.id} finished ({result.record.status})")
            else:
                logger.error(f"Scheduled backup failed: {result.error}")
        except Exception as e:
            logger.error(f"Scheduled backup errored: {e}")


def _enforce_retention_wrapper():
    """Run retention enforcement inside the app context."""
    with flask_app.app_context():
        try:
            summary = get_services().require_retention().enforce()
            logger.info(f"Retention cleanup: deleted={summary['deleted']}, errors={summary['errors']}")
        except Exception as e:
            logger.error(f"Retention cleanup errored: {e}")


def _run_manual_backup_wrapper(backup_type: str):
    """Run an on-demand backup inside the app context."""
    with flask_app.app_context():
        try:
            result = get_services().require_executor().trigger_on_demand(backup_type)
            if result.success:
                logger.info(f"Manual backup {result.record.id} finished ({result.record.status})")
            else:
                logger.error(f"Manual backup failed: {result.error}")
        except Exception as e:
            logger.error(f"Manual backup errored: {e}")


def trigger_backup_now(backup_type: str = BackupType.FULL) -> str:
    """
    Queue an on-demand backup to run in the scheduler's threads.

    Returns:
        The APScheduler job id

    Raises:
        ValueError: If backup_type is invalid
        RuntimeError: If the scheduler is not initialized
    """
    global scheduler

    if backup_type not in BackupType.ALL:
        raise ValueError(f"Invalid backup type: {backup_type}")

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # One second ahead so the job is not considered misfired on submission
    now = datetime.now(timezone.utc)
    job_id = f"manual_{backup_type}_{int(now.timestamp())}"
    scheduler.add_job(
        func=_run_manual_backup_wrapper,
        args=[backup_type],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: {backup_type} backup",
        replace_existing=False
    )

    logger.info(f"Manually triggered {backup_type} backup ({job_id})")
    return job_id


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
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
