from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Window:
    """Half-open [start, end) range of naive local datetimes."""

    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_month_start(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def is_last_day_of_month(day: date) -> bool:
    return (day + timedelta(days=1)).day == 1


def week_start(day: date) -> date:
    # weekday() is 0 for Monday, so Sunday (6) maps back to the Monday before it.
    return day - timedelta(days=day.weekday())


def day_window(now: Optional[datetime] = None) -> Window:
    today = (now or local_now()).date()
    return Window("day", _midnight(today), _midnight(today + timedelta(days=1)))


def week_window(now: Optional[datetime] = None) -> Window:
    today = (now or local_now()).date()
    start = week_start(today)
    return Window("week", _midnight(start), _midnight(start + timedelta(days=7)))


def month_window(now: Optional[datetime] = None) -> Window:
    today = (now or local_now()).date()
    return Window(
        "month", _midnight(month_start(today)), _midnight(next_month_start(today))
    )


def previous_month_window(now: Optional[datetime] = None) -> Window:
    today = (now or local_now()).date()
    this_start = month_start(today)
    prev_start = month_start(this_start - timedelta(days=1))
    return Window("previous_month", _midnight(prev_start), _midnight(this_start))


def trailing_months_window(months: int, now: Optional[datetime] = None) -> Window:
    """Whole calendar months before the current one."""
    today = (now or local_now()).date()
    end = month_start(today)
    start = end
    for _ in range(months):
        start = month_start(start - timedelta(days=1))
    return Window(f"last_{months}_months", _midnight(start), _midnight(end))


def resolve_window(kind: str, now: Optional[datetime] = None) -> Window:
    if kind == "day":
        return day_window(now)
    if kind == "week":
        return week_window(now)
    if kind == "month":
        return month_window(now)
    raise ValueError(f"Unknown stats window: {kind}")
