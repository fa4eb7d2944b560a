# payouts/tasks.py

from datetime import timedelta

from celery import shared_task
from django.conf import settings
import logging

from payouts.queues import FANOUT_LOCK_KEY

logger = logging.getLogger(__name__)

FANOUT_RETRY_COUNTDOWN = 60


@shared_task(bind=True, max_retries=60, ignore_result=True, store_errors_even_if_ignored=True)
def trigger_weekly_payout(self, payload=None):
    """
    Weekly trigger: stream eligible drivers into driver-transfer batches.

    The trigger queue is consumed with concurrency 1; the fan-out lock keeps
    that true across worker processes, so two runs never overlap. A run that
    finds the lock taken waits and retries instead of running alongside.
    """
    from payouts.locks import LockNotAcquired
    from payouts.runtime import get_services
    from payouts.services.fanout import BatchFanOut

    services = get_services()
    logger.info(f"Main job started jobId={self.request.id} data={payload}")

    try:
        lock = services.locks.acquire(FANOUT_LOCK_KEY, settings.PAYOUT_FANOUT_LOCK_TTL, retry_count=0)
    except LockNotAcquired:
        logger.warning(f"Weekly payout fan-out already running, retrying in {FANOUT_RETRY_COUNTDOWN}s jobId={self.request.id}")
        raise self.retry(countdown=FANOUT_RETRY_COUNTDOWN)

    try:
        result = BatchFanOut(
            services.broker,
            min_amount=settings.PAYOUT_MIN_TRANSFER_AMOUNT,
            batch_size=settings.PAYOUT_BATCH_SIZE,
            week_grace=timedelta(minutes=settings.PAYOUT_WEEK_GRACE_MINUTES),
        ).run(payload)
    finally:
        services.locks.release(lock)

    logger.info(f"Main job finished jobId={self.request.id}")
    return result.as_dict()


@shared_task(bind=True, ignore_result=True, store_errors_even_if_ignored=True)
def process_driver_batch(self, payload):
    """
    Transfer pending balances for one batch of drivers.
    Per-driver failures are handled inside; only infrastructure errors fail the job.
    """
    from payouts.runtime import build_transfer_processor, get_services

    services = get_services()
    processor = build_transfer_processor(services.gateway)
    return processor.process_batch(payload).as_dict()
