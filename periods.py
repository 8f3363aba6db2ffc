from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidInput


@dataclass(frozen=True)
class Period:
    """Inclusive timestamp range ``[start, end]``."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class MonthKey:
    month: int
    year: int


def _zone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def now_local() -> datetime:
    """Current wall-clock time in the configured zone, as a naive datetime."""
    return datetime.now(_zone()).replace(tzinfo=None)


def normalize_timestamp(value: datetime) -> datetime:
    """Stored timestamps are naive wall-clock times in the configured zone."""
    if value.tzinfo is None:
        return value
    return value.astimezone(_zone()).replace(tzinfo=None)


def current_month(today: Optional[date] = None) -> MonthKey:
    today = today or now_local().date()
    return MonthKey(today.month, today.year)


def validate_month(month: int, year: int) -> None:
    if not 1 <= month <= 12:
        raise InvalidInput("Month must be between 1 and 12")
    if not 1970 <= year <= 9998:
        raise InvalidInput("Year is out of range")


def month_period(year: int, month: int) -> Period:
    validate_month(month, year)
    start = datetime(year, month, 1)
    if month == 12:
        next_month = datetime(year + 1, 1, 1)
    else:
        next_month = datetime(year, month + 1, 1)
    return Period(start, next_month - timedelta(microseconds=1))


def parse_timestamp(value: str, *, end_of_day: bool = False) -> datetime:
    """Parse an ISO-8601 date or timestamp.

    A bare date means the start of that day, or its last instant when
    ``end_of_day`` is set.
    """
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            return datetime.combine(day, time.max if end_of_day else time.min)
        return normalize_timestamp(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise InvalidInput(f"Invalid date: {value}") from exc


def resolve_range(
    start: Optional[str] = None,
    end: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Turn query filters into an optional ``(start, end)`` pair.

    A complete month/year pair wins over an explicit range.
    """
    if month is not None and year is not None:
        period = month_period(year, month)
        return period.start, period.end
    start_at = parse_timestamp(start) if start else None
    end_at = parse_timestamp(end, end_of_day=True) if end else None
    if start_at and end_at and start_at > end_at:
        raise InvalidInput("Start date must be before end date")
    return start_at, end_at


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
