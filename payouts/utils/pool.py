# payouts/utils/pool.py

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from django.db import connection

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    item: Any
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _capture(fn: Callable[[Any], Any], item: Any) -> TaskResult:
    try:
        return TaskResult(item=item, value=fn(item))
    except Exception as exc:
        return TaskResult(item=item, error=exc)


def _capture_in_thread(fn: Callable[[Any], Any], item: Any) -> TaskResult:
    try:
        return _capture(fn, item)
    finally:
        # each pool thread gets its own Django connection
        connection.close()


def run_bounded(items: Iterable[Any], fn: Callable[[Any], Any], concurrency: int) -> List[TaskResult]:
    """
    Run fn over items with at most `concurrency` calls in flight.

    Every item yields a TaskResult (value or captured exception) in input
    order. One item failing never cancels the others.
    concurrency <= 1 runs inline on the calling thread.
    """
    items = list(items)
    if concurrency <= 1 or len(items) <= 1:
        return [_capture(fn, item) for item in items]

    workers = min(concurrency, len(items))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payout-transfer") as pool:
        futures = [pool.submit(_capture_in_thread, fn, item) for item in items]
        return [f.result() for f in futures]
