"""
APScheduler configuration and job scheduling for RecordVault.

Manages:
- The backup tick (interval job feeding BackupScheduler.tick)
- Daily retention policy enforcement
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from recordvault.backup.errors import BackupError
from recordvault.backup.scheduling import BackupScheduler

logger = logging.getLogger(__name__)

TICK_JOB_ID = 'backup_tick'
RETENTION_JOB_ID = 'retention_cleanup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None
backup_scheduler = None


def init_scheduler(app, engine):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        engine: BackupEngine the tick and retention jobs drive
    """
    global scheduler, flask_app, backup_scheduler

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    backup_scheduler = BackupScheduler(
        engine,
        engine.clock,
        window_minutes=app.config.get('BACKUP_SCHEDULE_WINDOW_MINUTES', 15)
    )

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_tick_wrapper,
        trigger=IntervalTrigger(seconds=app.config.get('SCHEDULER_TICK_SECONDS', 60)),
        id=TICK_JOB_ID,
        name='Backup Schedule Tick',
        replace_existing=True
    )

    # Add retention policy job (runs daily, 2 AM UTC by default)
    scheduler.add_job(
        func=_retention_wrapper,
        trigger=CronTrigger(hour=app.config.get('RETENTION_SWEEP_HOUR', 2), minute=0),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
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
    global scheduler, flask_app, backup_scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    flask_app = None
    backup_scheduler = None


def _tick_wrapper():
    """
    Run one schedule tick inside the stored app context.

    Errors are logged so a bad tick never kills the job.
    """
    with flask_app.app_context():
        try:
            record = backup_scheduler.tick()
            if record is not None:
                logger.info(f"Scheduler started backup {record.id} ({record.name})")
        except BackupError as e:
            logger.error(f"Scheduled backup tick failed: {e}")


def _retention_wrapper():
    """Run the retention sweep inside the stored app context."""
    from recordvault import get_engine

    with flask_app.app_context():
        try:
            summary = get_engine(flask_app).run_retention()
            logger.info(
                f"Retention sweep: deleted={len(summary['deleted'])} "
                f"purged={len(summary['purged'])} errors={len(summary['errors'])}"
            )
        except BackupError as e:
            logger.error(f"Retention sweep failed: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
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


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
