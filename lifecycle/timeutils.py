"""Time helpers shared by the lifecycle services."""

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterator, Optional
from zoneinfo import ZoneInfo

from lifecycle.config import settings

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them naive)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def whole_days_between(start: datetime, end: datetime) -> int:
    """Elapsed whole days from start to end, floored."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return int(seconds // SECONDS_PER_DAY)


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600


def get_timezone(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or settings.default_timezone)


def local_date(value: datetime, tz: ZoneInfo) -> date:
    """Calendar date of a timestamp in the given zone."""
    return ensure_utc(value).astimezone(tz).date()


def start_of_day(day: date, tz: ZoneInfo) -> datetime:
    """UTC instant at which a local calendar day begins."""
    return datetime(day.year, day.month, day.day, tzinfo=tz).astimezone(timezone.utc)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Every calendar day from start to end inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def iso_week_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"
