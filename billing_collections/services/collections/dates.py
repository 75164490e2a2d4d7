"""Local calendar helpers for anchor-date billing."""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def _zone(tz: str) -> ZoneInfo:
    return ZoneInfo(tz)


def local_date(value: datetime, tz: str) -> date:
    """Calendar date of an instant as seen in ``tz``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(_zone(tz)).date()


def today_in(tz: str) -> date:
    return local_date(datetime.now(timezone.utc), tz)


def start_of_local_day(day: date, tz: str) -> datetime:
    """UTC instant at which ``day`` begins in ``tz``."""
    return datetime.combine(day, time.min, tzinfo=_zone(tz)).astimezone(timezone.utc)


def _clamp_anchor_day(anchor_day: int) -> int:
    return min(31, max(1, int(anchor_day)))


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def anchor_date_for_month(day: date, anchor_day: int) -> date:
    """Anchor date inside the month of ``day``, clamped to the month length."""
    safe = _clamp_anchor_day(anchor_day)
    return day.replace(day=min(safe, days_in_month(day.year, day.month)))


def next_anchor_date(anchor: date, anchor_day: int) -> date:
    year, month = anchor.year, anchor.month + 1
    if month > 12:
        month = 1
        year += 1
    safe = _clamp_anchor_day(anchor_day)
    return date(year, month, min(safe, days_in_month(year, month)))


def previous_anchor_date(anchor: date, anchor_day: int) -> date:
    year, month = anchor.year, anchor.month - 1
    if month < 1:
        month = 12
        year -= 1
    safe = _clamp_anchor_day(anchor_day)
    return date(year, month, min(safe, days_in_month(year, month)))


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=int(days))


def cycle_period(anchor: date, anchor_day: int) -> tuple[date, date]:
    """Billing period covered by the cycle that starts on ``anchor``."""
    return anchor, next_anchor_date(anchor, anchor_day) - timedelta(days=1)
