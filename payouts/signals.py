# payouts/signals.py

import logging

from celery.signals import (
    task_failure,
    worker_process_init,
    worker_process_shutdown,
    worker_ready,
    worker_shutdown,
)

logger = logging.getLogger(__name__)


@worker_ready.connect
def install_schedule_on_startup(sender=None, **kwargs):
    from payouts.runtime import get_services
    from payouts.scheduler import install_weekly_scheduler

    try:
        services = get_services()
        install_weekly_scheduler(services.broker, services.locks)
    except Exception as e:
        # never block worker startup on the scheduler
        logger.error(f"Weekly scheduler install failed at startup: {e}")
    logger.info("Worker service started")


@worker_process_init.connect
def init_process_services(**kwargs):
    from payouts.runtime import reset_after_fork

    # each pool process opens its own broker/Redis connections
    reset_after_fork()


@worker_process_shutdown.connect
@worker_shutdown.connect
def close_process_services(**kwargs):
    from payouts.runtime import close_services

    close_services()


@task_failure.connect
def log_task_failure(sender=None, task_id=None, exception=None, args=None, **kwargs):
    task_name = getattr(sender, "name", sender)
    logger.error(f"Payout job failed task={task_name} jobId={task_id} args={args} err={exception}")
