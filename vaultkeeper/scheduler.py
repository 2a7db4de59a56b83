"""
APScheduler configuration for vaultkeeper.

Manages:
- The recurring backup run (cron expression)
- The immediate run-on-start trigger
- Skipping a trigger while a previous run is still in progress
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from vaultkeeper.backup.executor import run_backups
from vaultkeeper.config import Config, ConfigError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance and the configuration it runs with
scheduler = None
backup_config = None

_run_lock = threading.Lock()


def init_scheduler(config: Config):
    """
    Initialize and configure APScheduler.

    Args:
        config: Process configuration

    Raises:
        ConfigError: If the cron expression is invalid
    """
    global scheduler, backup_config

    if scheduler is not None:
        return scheduler

    backup_config = config

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    if config.cron_expression:
        try:
            trigger = CronTrigger.from_crontab(config.cron_expression, timezone='UTC')
        except ValueError as e:
            scheduler = None
            raise ConfigError(f"Invalid CRON_JOB_INTERVAL format: {e}")

        scheduler.add_job(
            func=execute_backup_wrapper,
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name='Scheduled backup',
            replace_existing=True
        )
        logger.info(f"Scheduling backups with cron pattern: {config.cron_expression}")

    if config.run_on_startup:
        trigger_backup_now()

    return scheduler


def start_scheduler():
    """
    Start the scheduler and block until it is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    jobs = get_scheduled_jobs()
    logger.info(f"Backup scheduler is running with {len(jobs)} job(s)")
    for job in jobs:
        logger.info(f"  - {job['id']}: {job['name']} (trigger: {job['trigger']})")

    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Backup scheduler stopped")


def trigger_backup_now():
    """
    Queue an immediate one-time backup run.

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name='Immediate backup',
        replace_existing=False
    )
    logger.info("Immediate backup run queued")


def execute_backup_wrapper(config: Optional[Config] = None) -> bool:
    """
    Run one backup from a scheduler thread.

    A run that starts while another is still executing is skipped.

    Returns:
        True if a run was executed, False if it was skipped
    """
    config = config or backup_config

    if not _run_lock.acquire(blocking=False):
        logger.warning("Previous backup run is still in progress, skipping this trigger")
        return False

    try:
        logger.info(f"Executing scheduled backup at {datetime.now(timezone.utc).isoformat()}")
        results = asyncio.run(run_backups(config))
        failed = [result.target for result in results if not result.success]
        if failed:
            logger.warning(f"Backup run completed with failures: {', '.join(failed)}")
        else:
            logger.info("Backup run completed successfully")
    except Exception as e:
        logger.exception(f"Backup run failed: {e}")
    finally:
        _run_lock.release()

    return True


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
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
