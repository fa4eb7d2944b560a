# payouts/broker.py

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

from django.db import transaction

from payouts.queues import JOB_TASKS, prefixed

logger = logging.getLogger(__name__)


class InvalidCronExpression(ValueError):
    pass


@dataclass(frozen=True)
class RepeatSpec:
    cron: str
    tz: str = "UTC"


def parse_cron(expr: str) -> dict:
    """
    Split a cron expression into CrontabSchedule fields.

    Accepts 5 fields (minute hour day month weekday) or 6 fields with a
    leading seconds column, which is dropped: Celery crontabs fire per minute.
    """
    parts = (expr or "").split()
    if len(parts) == 6:
        logger.warning(f"Cron '{expr}' has a seconds field; Celery schedules per minute, ignoring '{parts[0]}'")
        parts = parts[1:]
    if len(parts) != 5:
        raise InvalidCronExpression(f"Expected 5 or 6 cron fields, got {len(parts)}: '{expr}'")

    minute, hour, day_of_month, month_of_year, day_of_week = parts
    return {
        "minute": minute,
        "hour": hour,
        "day_of_month": day_of_month,
        "month_of_year": month_of_year,
        "day_of_week": day_of_week,
    }


class CeleryJobBroker:
    """
    Named-queue job channel on top of a Celery app.

    One-off jobs are published straight to the (prefixed) queue. Repeating
    jobs are registered as django-celery-beat periodic tasks keyed by job
    name, so registering the same job twice updates it in place.
    """

    def __init__(self, app, prefix: str = ""):
        self.app = app
        self.prefix = prefix
        self._connection = None

    def connect(self):
        if self._connection is None:
            self._connection = self.app.connection_for_write()
            self._connection.ensure_connection(max_retries=3)
            logger.info(f"Job broker connected: {self._connection.as_uri()}")
        return self

    def queue_name(self, queue: str) -> str:
        return prefixed(self.prefix, queue)

    def task_name(self, job_name: str) -> str:
        try:
            return JOB_TASKS[job_name]
        except KeyError:
            raise ValueError(f"Unknown job name: {job_name}")

    def add(
        self,
        queue: str,
        job_name: str,
        payload: dict,
        *,
        repeat: Optional[RepeatSpec] = None,
        remove_on_complete: bool = False,
        remove_on_fail: bool = False,
    ) -> str:
        """
        Enqueue `payload` for `job_name` on `queue`, or register it as a
        repeating job when `repeat` is given. Returns the job id.

        remove_on_complete drops the result of a successful run. Failed runs
        keep their error as long as the task is declared with
        store_errors_even_if_ignored (both payout tasks are); asking for
        remove_on_fail on a task that keeps errors is logged and ignored.
        """
        if remove_on_fail:
            logger.debug(f"remove_on_fail requested for {job_name}; failure retention is set on the task")
        if repeat is not None:
            return self._add_repeatable(queue, job_name, payload, repeat)

        self.connect()
        result = self.app.send_task(
            self.task_name(job_name),
            args=[payload],
            queue=self.queue_name(queue),
            connection=self._connection,
            ignore_result=remove_on_complete,
        )
        return result.id

    def _add_repeatable(self, queue: str, job_name: str, payload: dict, repeat: RepeatSpec) -> str:
        from django_celery_beat.models import CrontabSchedule, PeriodicTask

        fields = parse_cron(repeat.cron)
        with transaction.atomic():
            schedule, _ = CrontabSchedule.objects.get_or_create(timezone=ZoneInfo(repeat.tz), **fields)
            task, created = PeriodicTask.objects.update_or_create(
                name=job_name,
                defaults={
                    "task": self.task_name(job_name),
                    "crontab": schedule,
                    "interval": None,
                    "args": json.dumps([payload]),
                    "kwargs": "{}",
                    "queue": self.queue_name(queue),
                    "enabled": True,
                },
            )
        logger.info(f"Repeatable job {'registered' if created else 'updated'}: {job_name} cron='{repeat.cron}' tz={repeat.tz}")
        return task.name

    def close(self) -> None:
        if self._connection is not None:
            self._connection.release()
            self._connection = None
