"""
APScheduler configuration and job scheduling for Mongoback.

Manages:
- Scheduled backup plans (based on each plan's cron expression)
- Daily temp directory cleanup
- Manual plan triggers

Two attempts of the same plan share a storage directory and file naming, so
they must never overlap: cron jobs run with max_instances=1 and every run,
scheduled or manual, takes the plan's lock first.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from mongoback import db
from mongoback.models import BackupPlan
from mongoback.backup.errors import BackupError, ConfigError
from mongoback.backup.executor import execute_backup_plan
from mongoback.backup.retention import cleanup_temp_dir

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

_plan_locks = {}
_plan_locks_guard = threading.Lock()


def _plan_lock(plan_id: int) -> threading.Lock:
    with _plan_locks_guard:
        return _plan_locks.setdefault(plan_id, threading.Lock())


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Jobs run outside any request and need the app to push a context
    flask_app = app
    config = app.config

    # Plans run one attempt at a time; missed runs collapse into one
    scheduler = BackgroundScheduler(
        jobstores={'default': SQLAlchemyJobStore(url=config['SQLALCHEMY_DATABASE_URI'])},
        executors={'default': ThreadPoolExecutor(max_workers=config['SCHEDULER_MAX_WORKERS'])},
        job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': config['SCHEDULER_MISFIRE_GRACE_TIME'],
        },
        timezone=config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_cleanup_temp_wrapper,
        trigger=CronTrigger.from_crontab(config['TEMP_CLEANUP_CRON'], timezone='UTC'),
        id='temp_cleanup',
        name='Daily Temp Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_plans():
    """
    Synchronize backup plans from database to scheduler.

    This function should be called:
    - After app startup
    - After creating/updating/deleting backup plans
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Clean up old manual jobs from previous "run now" requests
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            scheduler.remove_job(job.id)
            logger.info(f"Cleaned up old manual job: {job.id}")

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for plan_record in BackupPlan.query.all():
        job_id = f"backup_{plan_record.id}"
        cron = _plan_cron(plan_record)

        if plan_record.enabled and cron:
            _schedule_plan(plan_record, cron)
        elif job_id in scheduled_job_ids:
            scheduler.remove_job(job_id)
            logger.info(f"Removed scheduled backup plan: {plan_record.name}")
        scheduled_job_ids.discard(job_id)

    # Remove any leftover scheduled jobs that don't exist in database
    for leftover_id in scheduled_job_ids:
        scheduler.remove_job(leftover_id)
        logger.info(f"Removed orphaned scheduled job: {leftover_id}")


def _plan_cron(plan_record: BackupPlan) -> str:
    try:
        return plan_record.to_plan().scheduler.cron
    except (ConfigError, ValueError) as e:
        logger.error(f"Plan {plan_record.name} has an invalid configuration, not scheduling: {e}")
        return ''


def _schedule_plan(plan_record: BackupPlan, cron: str):
    """
    Add or replace the cron job of a plan.

    Args:
        plan_record: BackupPlan instance
        cron: Crontab expression
    """
    try:
        trigger = CronTrigger.from_crontab(cron, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to schedule backup plan {plan_record.name}: {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[plan_record.id],
        trigger=trigger,
        id=f"backup_{plan_record.id}",
        name=f"Backup: {plan_record.name}",
        replace_existing=True
    )
    logger.info(f"Scheduled backup plan: {plan_record.name} ({cron})")


def _execute_backup_wrapper(plan_id: int, allow_disabled: bool = False):
    """
    Run a plan from a scheduler thread.

    Skips the run when an attempt of the same plan is still in progress.

    Args:
        plan_id: BackupPlan ID to execute
        allow_disabled: If True, allow execution of disabled plans (for manual triggers)
    """
    lock = _plan_lock(plan_id)
    if not lock.acquire(blocking=False):
        logger.warning(f"Backup plan {plan_id} is already running, skipping this run")
        return

    try:
        with flask_app.app_context():
            try:
                history = execute_backup_plan(plan_id, allow_disabled=allow_disabled)
                logger.info(f"Backup plan {plan_id} completed with status: {history.status}")
            except ValueError as e:
                logger.error(f"Scheduler backup plan {plan_id} not run: {e}")
            finally:
                db.session.remove()
    finally:
        lock.release()


def _cleanup_temp_wrapper():
    """Remove files older than one day from the temp directory, keeping the state file."""
    config = flask_app.config
    try:
        deleted = cleanup_temp_dir(config['TEMP_DIR'], keep=(config['STATE_FILE'],))
        logger.info(f"Temp cleanup finished, removed {len(deleted)} files")
    except BackupError as e:
        logger.error(f"Temp cleanup failed: {e}")


def trigger_backup_now(plan_id: int):
    """
    Manually trigger a backup plan immediately.

    Args:
        plan_id: BackupPlan ID to execute

    Raises:
        RuntimeError: If the scheduler is not running in this process
        ValueError: If plan not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    plan_record = db.session.get(BackupPlan, plan_id)
    if not plan_record:
        raise ValueError(f"Backup plan not found: {plan_id}")

    # One-time job with a 1 second delay to avoid racing the caller's commit
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[plan_id, True],  # True = allow_disabled for manual triggers
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{plan_id}_{int(now.timestamp())}",
        name=f"Manual: {plan_record.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup plan: {plan_record.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
