# payouts/services/fanout.py

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Iterable, List

from django.utils import timezone

from payouts.queues import BATCH_JOB, TRANSFER_QUEUE
from payouts.services.drivers import iter_eligible_driver_ids
from payouts.utils.weeks import PayoutWeek, week_for

logger = logging.getLogger(__name__)


@dataclass
class FanOutResult:
    week: PayoutWeek
    batches: int = 0
    drivers: int = 0

    def as_dict(self) -> dict:
        return {"status": "ok", "weekStart": self.week.key, "batches": self.batches, "drivers": self.drivers}


class BatchFanOut:
    """
    Turns one weekly trigger into driver-transfer batch jobs.

    Eligible drivers are streamed, never loaded all at once: memory is one
    batch of ids regardless of how many drivers qualify.

    The settled week is fixed once per run and carried by every batch, so
    batches that run after midnight still settle the week the trigger closed.
    `week_grace` lets a late trigger (lock wait, backlog) still land on the
    week that just ended.
    """

    def __init__(
        self,
        broker,
        *,
        min_amount: Decimal,
        batch_size: int = 200,
        week_grace: timedelta = timedelta(0),
        source: Callable[..., Iterable] = iter_eligible_driver_ids,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.broker = broker
        self.min_amount = min_amount
        self.batch_size = batch_size
        self.week_grace = week_grace
        self.source = source

    def _emit(self, driver_ids: List, result: FanOutResult, final: bool = False) -> None:
        batch_id = str(uuid.uuid4())
        self.broker.add(
            TRANSFER_QUEUE,
            BATCH_JOB,
            {"drivers": [str(d) for d in driver_ids], "batchId": batch_id, "weekStart": result.week.key},
            remove_on_complete=True,
        )
        result.batches += 1
        result.drivers += len(driver_ids)
        logger.info(f"Enqueued {'final ' if final else ''}driver batch batchId={batch_id} size={len(driver_ids)}")

    def run(self, trigger_payload: dict = None, now=None) -> FanOutResult:
        week = week_for((now or timezone.now()) - self.week_grace)
        logger.info(f"Weekly payout fan-out started week={week.key} trigger={trigger_payload or {}}")
        result = FanOutResult(week=week)
        buffer: List = []

        for driver_id in self.source(min_pending=self.min_amount, page_size=self.batch_size):
            buffer.append(driver_id)
            if len(buffer) >= self.batch_size:
                self._emit(buffer, result)
                buffer = []

        if buffer:
            self._emit(buffer, result, final=True)

        logger.info(f"Weekly payout fan-out finished week={week.key} batches={result.batches} drivers={result.drivers}")
        return result
