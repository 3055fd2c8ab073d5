from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime:  # pragma: no cover - interface
        """Current time as a naive UTC datetime (the storage convention)."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def __repr__(self) -> str:
        return "SystemClock()"


def local_date(moment: datetime, tz: ZoneInfo) -> date:
    return moment.replace(tzinfo=timezone.utc).astimezone(tz).date()


def local_day_start(moment: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC instant at which the local calendar day containing ``moment`` began."""
    day = local_date(moment, tz)
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    return start.astimezone(timezone.utc).replace(tzinfo=None)


def seconds_until(moment: datetime, now: datetime) -> int:
    remaining = (moment - now).total_seconds()
    if remaining <= 0:
        return 0
    whole = int(remaining)
    return whole if whole == remaining else whole + 1


def format_remaining(delta: timedelta) -> str:
    total = max(int(delta.total_seconds()), 0)
    hours, rest = divmod(total, 3600)
    return f"{hours}h {rest // 60}m"


def utc_epoch(moment: datetime) -> int:
    return int(moment.replace(tzinfo=timezone.utc).timestamp())
