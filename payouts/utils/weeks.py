# payouts/utils/weeks.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone as dt_timezone


@dataclass(frozen=True)
class PayoutWeek:
    """Monday-anchored calendar week, the unit a weekly transfer settles."""

    start: date
    end: date

    @property
    def key(self) -> str:
        return self.start.isoformat()


def week_for(moment: datetime | date) -> PayoutWeek:
    """
    Week containing `moment`. Aware datetimes are evaluated in UTC so every
    worker derives the same week regardless of its local timezone.
    """
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(dt_timezone.utc)
        day = moment.date()
    else:
        day = moment
    start = day - timedelta(days=day.weekday())
    return PayoutWeek(start=start, end=start + timedelta(days=6))
