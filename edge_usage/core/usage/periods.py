from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

# A month's data is only final upstream once the following month's first day has passed.
CLOSED_MONTH_MIN_DAY = 2


@dataclass(frozen=True, slots=True)
class BillingPeriod:
    start: datetime
    end: datetime

    @property
    def month(self) -> str:
        return month_key(self.start)


def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def month_key(value: datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(key: str) -> datetime:
    return datetime.strptime(key, "%Y-%m")


def hour_bucket(value: datetime) -> str:
    return value.strftime("%Y-%m-%d-%H")


def current_period(now: datetime) -> BillingPeriod:
    return BillingPeriod(start=month_start(now), end=now)


def previous_period(now: datetime) -> BillingPeriod:
    this_month = month_start(now)
    last_day = this_month - timedelta(days=1)
    return BillingPeriod(
        start=month_start(last_day),
        end=last_day.replace(hour=23, minute=59, second=59),
    )


def previous_month_closed(now: datetime) -> bool:
    return now.day >= CLOSED_MONTH_MIN_DAY
