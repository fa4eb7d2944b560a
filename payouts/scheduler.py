# payouts/scheduler.py

import logging

from django.conf import settings
from django.utils import timezone

from payouts.broker import RepeatSpec
from payouts.locks import LockNotAcquired
from payouts.queues import INSTALL_LOCK_KEY, TRIGGER_JOB, TRIGGER_QUEUE

logger = logging.getLogger(__name__)

INSTALL_LOCK_TTL_SECONDS = 10


def install_weekly_scheduler(broker, locks, *, cron: str = None, tz: str = None) -> bool:
    """
    Register the repeating weekly payout trigger, once, no matter how many
    processes start at the same time.

    Only the process that wins the short install lock registers the job; the
    others log and return False. Installation problems never propagate:
    a worker that failed to install still starts and consumes jobs.

    Returns True when this call registered the job.
    """
    cron_expr = cron or settings.PAYOUT_SCHEDULER_CRON
    tz_name = tz or settings.PAYOUT_SCHEDULER_TZ

    try:
        lock = locks.acquire(INSTALL_LOCK_KEY, INSTALL_LOCK_TTL_SECONDS)
    except LockNotAcquired as e:
        logger.warning(f"Could not install scheduler (maybe already installed): {e}")
        return False
    except Exception as e:
        logger.error(f"Scheduler install skipped, lock service unavailable: {e}")
        return False

    try:
        logger.info("Installing weekly scheduler job...")
        broker.add(
            TRIGGER_QUEUE,
            TRIGGER_JOB,
            {"triggeredAt": timezone.now().isoformat()},
            repeat=RepeatSpec(cron=cron_expr, tz=tz_name),
            remove_on_complete=True,
            remove_on_fail=False,
        )
        logger.info(f"Weekly scheduler installed cron='{cron_expr}' tz={tz_name}")
        return True
    except Exception as e:
        logger.error(f"Could not install scheduler: {e}")
        return False
    finally:
        locks.release(lock)
