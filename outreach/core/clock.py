"""
Time helpers.

Every timestamp in the database is a naive UTC datetime. Business-hours and
"today" computations go through the configured business timezone.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC now, matching the DateTime columns"""
    return datetime.utcnow()


def to_local(moment: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC -> aware local time"""
    return moment.replace(tzinfo=timezone.utc).astimezone(tz)


def to_utc(local: datetime) -> datetime:
    """Aware local time -> naive UTC"""
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def local_day_bounds(moment: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """[start, end) of the local calendar day containing ``moment``, as naive UTC."""
    local = to_local(moment, tz)
    start = datetime(local.year, local.month, local.day, tzinfo=tz)
    next_day = start.date() + timedelta(days=1)
    end = datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz)
    return to_utc(start), to_utc(end)
