# payouts/services/transfers.py

"""
Weekly driver transfers.

One batch job carries up to PAYOUT_BATCH_SIZE driver ids and the week being
settled. Each driver is its own failure domain:

    Pending -> Reserved -> GatewaySucceeded -> Settled
                        -> GatewayFailedTransient -> Retrying -> Settled | GatewayFailedTerminal
                        -> GatewayFailedTerminal -> RolledBack

Reserved is durable: the pending_balance debit and a PayoutReservation commit
together before the gateway is called, and no transaction stays open while
the gateway (and its retry sleeps) runs. Settlement credits
available_balance, writes the DriverPayout and drops the reservation in one
transaction; rollback releases the reservation back to pending_balance. A
run that finds a reservation for the driver-week resumes it with the same
idempotency key; a DriverPayout means the week is already settled.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Union

from django.db import connection, transaction
from django.utils import timezone

from payouts.models import DriverPayout, PayoutAlert, PayoutReservation
from payouts.services.drivers import get_driver
from payouts.services.gateway import (
    PaymentGateway,
    TerminalGatewayError,
    TransferNotCompleted,
    TransferRequest,
    TransferResponse,
)
from payouts.services.wallet import credit_available, get_driver_balance, release_pending, reserve_pending
from payouts.utils.money import q, to_minor_units, transferable
from payouts.utils.pool import run_bounded
from payouts.utils.retry import RetryExhausted, RetryPolicy, attempt
from payouts.utils.weeks import PayoutWeek, week_for

logger = logging.getLogger(__name__)

SETTLED = "settled"
SKIPPED = "skipped"
FAILED = "failed"

AUTOMATIC = "automatic"

# Stripe keeps idempotency keys for at least 24h; older reservations are not resent
IDEMPOTENCY_WINDOW = timedelta(hours=24)

_sqlite_writer = threading.RLock()


@contextmanager
def _db_phase():
    # SQLite has a single writer: serialize the short DB phases of pool threads
    if connection.vendor == "sqlite":
        with _sqlite_writer:
            yield
    else:
        yield


@dataclass
class TransferOutcome:
    driver_id: str
    status: str
    reason: str = ""
    amount: Optional[Decimal] = None
    transfer_id: str = ""


@dataclass
class BatchResult:
    batch_id: str
    outcomes: List[TransferOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def as_dict(self) -> dict:
        return {
            "ok": True,
            "batchId": self.batch_id,
            "settled": self.count(SETTLED),
            "skipped": self.count(SKIPPED),
            "failed": self.count(FAILED),
        }


def idempotency_key(driver_id, week: PayoutWeek) -> str:
    """Stable per driver-week, so every retry of the same transfer is one charge."""
    return f"transfer:{driver_id}:{week.key}"


def batch_week(payload: dict, now=None) -> PayoutWeek:
    """Week carried by the batch; payloads without one fall back to the clock."""
    week_start = payload.get("weekStart")
    if week_start:
        return week_for(date.fromisoformat(str(week_start)))
    return week_for(now or timezone.now())


def _is_retryable(exc: Exception) -> bool:
    return not isinstance(exc, TerminalGatewayError)


def _raise_alert(*, driver, title: str, message: str, metadata: dict) -> None:
    try:
        with _db_phase():
            PayoutAlert.objects.create(driver=driver, title=title, message=message, metadata=metadata)
    except Exception as e:
        logger.error(f"Failed to record payout alert '{title}' for driver {getattr(driver, 'id', None)}: {e}")


class DriverTransferProcessor:
    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        min_amount: Decimal,
        currency: str = "CAD",
        concurrency: int = 6,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.min_amount = q(min_amount)
        self.currency = currency
        self.concurrency = concurrency
        self.retry_policy = retry_policy
        self.sleep = sleep

    # ------------------------------------------------------------------
    # batch
    # ------------------------------------------------------------------

    def process_batch(self, payload: dict, now=None) -> BatchResult:
        drivers = payload.get("drivers")
        if not isinstance(drivers, list):
            raise ValueError(f"Malformed driver batch payload: {payload}")
        batch_id = str(payload.get("batchId") or "")
        week = batch_week(payload, now)

        logger.info(f"Processing driver batch batchId={batch_id} size={len(drivers)} week={week.key}")

        results = run_bounded(
            drivers,
            lambda driver_id: self.transfer_driver(driver_id, week=week, batch_id=batch_id),
            self.concurrency,
        )

        batch = BatchResult(batch_id=batch_id)
        for r in results:
            if r.ok:
                batch.outcomes.append(r.value)
            else:
                # transfer_driver catches everything; this is a last line of defence
                logger.error(f"Unhandled error for driver {r.item} in batch {batch_id}: {r.error}")
                batch.outcomes.append(TransferOutcome(driver_id=str(r.item), status=FAILED, reason=str(r.error)))

        logger.info(
            f"Batch processed batchId={batch_id} settled={batch.count(SETTLED)} "
            f"skipped={batch.count(SKIPPED)} failed={batch.count(FAILED)}"
        )
        return batch

    # ------------------------------------------------------------------
    # single driver
    # ------------------------------------------------------------------

    def transfer_driver(self, driver_id, *, week: PayoutWeek, batch_id: str = "") -> TransferOutcome:
        driver_id = str(driver_id)
        try:
            return self._transfer_driver(driver_id, week, batch_id)
        except Exception as e:
            logger.exception(f"Transfer failed for driver {driver_id} in batch {batch_id}: {e}")
            return TransferOutcome(driver_id=driver_id, status=FAILED, reason=str(e))

    def _transfer_driver(self, driver_id: str, week: PayoutWeek, batch_id: str) -> TransferOutcome:
        with _db_phase():
            opened = self._open_reservation(driver_id, week, batch_id)
        if isinstance(opened, TransferOutcome):
            return opened

        driver, reservation = opened
        amount = reservation.amount

        try:
            response = self._attempt_transfer(driver, amount, week)
        except (TerminalGatewayError, RetryExhausted) as e:
            reason = "retries_exhausted" if isinstance(e, RetryExhausted) else "terminal_gateway_error"
            with _db_phase(), transaction.atomic():
                release_pending(driver.id, amount)
                reservation.delete()
            logger.error(
                f"Transfer failed for driver, released reservation driverId={driver_id} "
                f"batchId={batch_id} amount={amount} reason={reason} error={e}"
            )
            _raise_alert(
                driver=driver,
                title="Weekly payout failed",
                message=f"Weekly payout of {amount} {self.currency} for week {week.key} failed: {e}",
                metadata={"batchId": batch_id, "weekStart": week.key, "reason": reason, "amount": str(amount)},
            )
            return TransferOutcome(driver_id=driver_id, status=FAILED, reason=reason, amount=amount)

        try:
            with _db_phase(), transaction.atomic():
                credit_available(driver.id, amount)
                DriverPayout.objects.create(
                    driver=driver,
                    week_start=week.start,
                    week_end=week.end,
                    total_earnings=amount,
                    total_paid=amount,
                    status="paid",
                    payout_method=AUTOMATIC,
                    payout_date=timezone.now(),
                    external_transfer_id=response.transfer_id,
                    batch_id=batch_id,
                )
                reservation.delete()
        except Exception as e:
            # Money moved; the reservation stays in place for reconciliation
            logger.critical(
                f"Transfer {response.transfer_id} succeeded but settlement was not recorded "
                f"driverId={driver_id} batchId={batch_id} amount={amount}: {e}"
            )
            _raise_alert(
                driver=driver,
                title="Payout needs reconciliation",
                message=f"Transfer {response.transfer_id} of {amount} {self.currency} was paid but not recorded: {e}",
                metadata={
                    "batchId": batch_id,
                    "weekStart": week.key,
                    "transferId": response.transfer_id,
                    "reservationId": reservation.pk,
                    "amount": str(amount),
                },
            )
            return TransferOutcome(
                driver_id=driver_id,
                status=FAILED,
                reason="settlement_commit_failed",
                amount=amount,
                transfer_id=response.transfer_id,
            )

        logger.info(f"Transfer succeeded driverId={driver_id} amount={amount} transferId={response.transfer_id}")
        return TransferOutcome(
            driver_id=driver_id,
            status=SETTLED,
            amount=amount,
            transfer_id=response.transfer_id,
        )

    def _open_reservation(
        self, driver_id: str, week: PayoutWeek, batch_id: str
    ) -> Union[TransferOutcome, tuple]:
        """
        Re-read the driver and wallet (balances may have moved since fan-out)
        and either resume this week's reservation or take a new one.
        Returns (driver, reservation) to transfer, or the outcome of a skip.
        """
        driver = get_driver(driver_id)
        if driver is None:
            logger.warning(f"Driver not found - skipping driverId={driver_id}")
            return TransferOutcome(driver_id=driver_id, status=SKIPPED, reason="driver_not_found")

        if not driver.is_active:
            logger.info(f"Driver is inactive - skipping driverId={driver_id}")
            return TransferOutcome(driver_id=driver_id, status=SKIPPED, reason="driver_inactive")

        if not driver.has_payout_destination:
            logger.info(f"Driver has no stripe account - skipping driverId={driver_id}")
            return TransferOutcome(driver_id=driver_id, status=SKIPPED, reason="no_payout_destination")

        settled = DriverPayout.objects.filter(
            driver=driver, week_start=week.start, payout_method=AUTOMATIC
        ).first()
        if settled is not None:
            logger.info(f"Week already settled - skipping driverId={driver_id} week={week.key} payoutId={settled.pk}")
            return TransferOutcome(
                driver_id=driver_id,
                status=SKIPPED,
                reason="already_settled",
                amount=settled.total_paid,
                transfer_id=settled.external_transfer_id,
            )

        with transaction.atomic():
            reservation = (
                PayoutReservation.objects.select_for_update()
                .filter(driver=driver, week_start=week.start)
                .first()
            )
            if reservation is not None:
                return self._resume(driver, reservation, week, batch_id)

            wallet = get_driver_balance(driver.id)
            pending = q(wallet.pending_balance) if wallet else Decimal("0.00")
            amount = transferable(pending, self.currency)
            if wallet is None or amount <= 0 or amount < self.min_amount:
                logger.info(f"Pending below threshold - skipping driverId={driver_id} pending={pending}")
                return TransferOutcome(driver_id=driver_id, status=SKIPPED, reason="below_threshold", amount=pending)

            reserve_pending(driver.id, amount)
            reservation = PayoutReservation.objects.create(
                driver=driver,
                week_start=week.start,
                week_end=week.end,
                amount=amount,
                batch_id=batch_id,
            )
        return driver, reservation

    def _resume(self, driver, reservation: PayoutReservation, week: PayoutWeek, batch_id: str):
        driver_id = str(driver.id)
        if timezone.now() - reservation.created_at >= IDEMPOTENCY_WINDOW:
            logger.error(
                f"Reservation older than the idempotency window, not resending "
                f"driverId={driver_id} week={week.key} reservationId={reservation.pk}"
            )
            _raise_alert(
                driver=driver,
                title="Payout needs reconciliation",
                message=f"Reserved payout of {reservation.amount} {self.currency} for week {week.key} was never settled",
                metadata={
                    "batchId": batch_id,
                    "weekStart": week.key,
                    "reservationId": reservation.pk,
                    "amount": str(reservation.amount),
                },
            )
            return TransferOutcome(
                driver_id=driver_id,
                status=SKIPPED,
                reason="awaiting_reconciliation",
                amount=reservation.amount,
            )

        logger.info(f"Resuming reserved payout driverId={driver_id} week={week.key} reservationId={reservation.pk}")
        return driver, reservation

    def _attempt_transfer(self, driver, amount: Decimal, week: PayoutWeek) -> TransferResponse:
        request = TransferRequest(
            amount_minor_units=to_minor_units(amount, self.currency),
            currency=self.currency,
            destination_account=driver.stripe_account_id,
            idempotency_key=idempotency_key(driver.id, week),
            description=f"Weekly payout transfer for week {week.key}",
        )

        def call(number: int) -> TransferResponse:
            response = self.gateway.create_transfer(request)
            if not response.is_paid:
                raise TransferNotCompleted(response)
            return response

        def on_retry(number: int, delay: float, exc: Exception) -> None:
            logger.warning(
                f"Transfer attempt failed, retrying driverId={driver.id} attempt={number} "
                f"delay={delay:.1f}s message={exc}"
            )

        return attempt(
            call,
            policy=self.retry_policy,
            is_retryable=_is_retryable,
            on_retry=on_retry,
            sleep=self.sleep,
        )
