from __future__ import annotations

import calendar
from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Tuple


def parse_ymd(value: str) -> date_type:
    return datetime.strptime(value, "%Y-%m-%d").date()


def canonical_ymd(value: str) -> str:
    """Zero-padded YYYY-MM-DD; stored dates are compared as text."""
    return parse_ymd(value).strftime("%Y-%m-%d")


def parse_ym(value: str) -> Tuple[int, int]:
    parsed = datetime.strptime(value, "%Y-%m")
    return parsed.year, parsed.month


def hm_to_minute(value: str) -> int:
    hour_str, minute_str = value.split(":")[:2]
    hour, minute = int(hour_str), int(minute_str)
    if not (0 <= hour <= 24 and 0 <= minute < 60):
        raise ValueError(f"invalid time: {value}")
    return hour * 60 + minute


def minute_to_hm(value: int) -> str:
    hour = value // 60
    minute = value % 60
    return f"{hour:02d}:{minute:02d}"


def at_minute(day: str, minute: int) -> datetime:
    return datetime.combine(parse_ymd(day), datetime.min.time()) + timedelta(minutes=minute)


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day (Aug 31 + 6 months => Feb 28/29)."""
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    day = min(start.day, calendar.monthrange(y, m)[1])
    return start.replace(year=y, month=m, day=day)


def week_start(day: date_type) -> date_type:
    return day - timedelta(days=day.weekday())


def month_bounds(year: int, month: int) -> Tuple[str, str]:
    last_day = calendar.monthrange(year, month)[1]
    return f"{year:04d}-{month:02d}-01", f"{year:04d}-{month:02d}-{last_day:02d}"


WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def weekday_label(weekday: int) -> str:
    if 0 <= weekday <= 6:
        return WEEKDAY_LABELS[weekday]
    return str(weekday)


def current_time() -> datetime:
    """Local wall-clock time; the booking grid has no timezone model."""
    return datetime.now()
