# payouts/runtime.py

"""
Process-wide services: the job broker connection, the Redis lock service
and the payment gateway. Built once per process, closed once at shutdown,
and handed explicitly to the scheduler, fan-out and transfer worker.
"""

import logging
import threading
from dataclasses import dataclass

from django.conf import settings

from payouts.broker import CeleryJobBroker
from payouts.locks import RedisLockService
from payouts.services.gateway import PaymentGateway, StripeGateway
from payouts.services.transfers import DriverTransferProcessor
from payouts.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class PayoutServices:
    broker: CeleryJobBroker
    locks: RedisLockService
    gateway: PaymentGateway

    def close(self) -> None:
        for name, svc in (("broker", self.broker), ("locks", self.locks)):
            try:
                svc.close()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")


_services = None
_services_lock = threading.Lock()


def build_services() -> PayoutServices:
    from riden_project.celery import app

    return PayoutServices(
        broker=CeleryJobBroker(app, prefix=settings.PAYOUT_QUEUE_PREFIX),
        locks=RedisLockService(settings.REDIS_URL),
        gateway=StripeGateway(settings.STRIPE_SECRET_KEY, timeout=settings.STRIPE_TIMEOUT_SECONDS),
    )


def get_services() -> PayoutServices:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
            logger.info("Payout services initialized")
        return _services


def close_services() -> None:
    global _services
    with _services_lock:
        if _services is not None:
            _services.close()
            _services = None
            logger.info("Queues and Redis connection closed gracefully")


def build_transfer_processor(gateway: PaymentGateway) -> DriverTransferProcessor:
    return DriverTransferProcessor(
        gateway,
        min_amount=settings.PAYOUT_MIN_TRANSFER_AMOUNT,
        currency=settings.PAYOUT_CURRENCY,
        concurrency=settings.PAYOUT_WORKER_CONCURRENCY,
        retry_policy=RetryPolicy(
            retries=settings.PAYOUT_RETRY_ATTEMPTS,
            base_delay=settings.PAYOUT_RETRY_BASE_DELAY,
            backoff_factor=2,
            max_delay=settings.PAYOUT_RETRY_MAX_DELAY,
        ),
    )


def reset_after_fork() -> None:
    """Forget services inherited from the parent process without closing its sockets."""
    global _services, _services_lock
    _services = None
    _services_lock = threading.Lock()
