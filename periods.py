from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MS = timedelta(milliseconds=1)


def _tz(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or get_settings().timezone)


def local_today(tz_name: Optional[str] = None) -> date:
    return datetime.now(_tz(tz_name)).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def to_millis(moment: datetime) -> int:
    """Milliseconds since the epoch, computed without floating point."""
    return (moment - EPOCH) // ONE_MS


def from_millis(value: int) -> datetime:
    return EPOCH + value * ONE_MS


def day_start_ms(day: date, tz_name: Optional[str] = None) -> int:
    return to_millis(datetime.combine(day, time.min, tzinfo=_tz(tz_name)))


def day_end_ms(day: date, tz_name: Optional[str] = None) -> int:
    return to_millis(datetime.combine(day, time(23, 59, 59), tzinfo=_tz(tz_name)))


@dataclass(frozen=True)
class MonthWindow:
    year: int
    month: int
    start_ms: int
    end_ms: int


def month_window(year: int, month: int, tz_name: Optional[str] = None) -> MonthWindow:
    """First instant of the month through 23:59:59 on its last day, inclusive."""
    first = date(year, month, 1)
    last = date(year, month, days_in_month(year, month))
    return MonthWindow(
        year=year,
        month=month,
        start_ms=day_start_ms(first, tz_name),
        end_ms=day_end_ms(last, tz_name),
    )


@dataclass(frozen=True)
class MonthProgress:
    year: int
    month: int
    days_in_month: int
    days_elapsed: int
    days_remaining: int
    percentage_complete: float

    def as_dict(self) -> dict[str, object]:
        return {
            "daysInMonth": self.days_in_month,
            "daysElapsed": self.days_elapsed,
            "daysRemaining": self.days_remaining,
            "percentageComplete": self.percentage_complete,
        }


def month_progress(
    year: int, month: int, *, today: Optional[date] = None
) -> MonthProgress:
    today = today or local_today()
    total = days_in_month(year, month)
    first = date(year, month, 1)
    if today.year == year and today.month == month:
        elapsed = today.day
    elif today > first:
        elapsed = total
    else:
        elapsed = 1
    return MonthProgress(
        year=year,
        month=month,
        days_in_month=total,
        days_elapsed=elapsed,
        days_remaining=max(0, total - elapsed),
        percentage_complete=elapsed / total * 100,
    )


def trailing_months(year: int, month: int, count: int) -> list[tuple[int, int]]:
    """``count`` (year, month) pairs ending at the given month, oldest first."""
    months: list[tuple[int, int]] = []
    for offset in range(count - 1, -1, -1):
        index = year * 12 + (month - 1) - offset
        months.append((index // 12, index % 12 + 1))
    return months
