"""
APScheduler configuration for unattended "backup all" runs.

A BlockingScheduler fires one cron-triggered job in the foreground
process; each firing discovers units and backs them up in sequence.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from guardian.config import ConfigurationError


logger = logging.getLogger(__name__)

JOB_ID = 'backup_all'


def build_trigger(cron_expression: str) -> CronTrigger:
    """
    Parse a standard 5-field crontab expression.

    Raises:
        ConfigurationError: If the expression is invalid
    """
    try:
        return CronTrigger.from_crontab(cron_expression)
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression {cron_expression!r}: {e}")


def create_scheduler(cron_expression: str, job, scheduler_cls=None):
    """
    Build a scheduler running job on the given cron schedule.

    Args:
        cron_expression: Crontab expression, e.g. "0 3 * * *"
        job: Callable invoked on every firing
        scheduler_cls: Scheduler class (BlockingScheduler when omitted)

    Returns:
        Configured, not yet started scheduler
    """
    trigger = build_trigger(cron_expression)

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one backup run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = (scheduler_cls or BlockingScheduler)(job_defaults=job_defaults)
    scheduler.add_job(
        func=job,
        trigger=trigger,
        id=JOB_ID,
        name='Scheduled backup of all units',
        replace_existing=True
    )
    return scheduler


def run_scheduled(cron_expression: str, job):
    """Run job on a schedule until interrupted."""
    scheduler = create_scheduler(cron_expression, job)
    logger.info("Scheduled backups enabled: %s", cron_expression)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
