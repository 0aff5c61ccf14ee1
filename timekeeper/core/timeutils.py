from __future__ import annotations

import time
from datetime import date, datetime, timedelta

from timekeeper.core.config import settings


def epoch_now() -> int:
    """Current time as whole epoch seconds.

    Wrapped so tests can patch it.
    """
    return int(time.time())


def local_date(ts: int) -> date:
    """Calendar day of an epoch instant in the configured timezone."""
    return datetime.fromtimestamp(ts, tz=settings.tz).date()


def start_of_day(day: date) -> int:
    """Epoch seconds of local midnight at the start of *day*."""
    return int(datetime(day.year, day.month, day.day, tzinfo=settings.tz).timestamp())


def days_ago(days: int, now: int) -> date:
    return local_date(now) - timedelta(days=days)

