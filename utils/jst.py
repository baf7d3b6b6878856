"""
JST calendar helpers.

Timestamps are stored as naive UTC. Bonus days, rankings and batch expiry
follow the Asia/Tokyo calendar, so every boundary is computed in JST and
converted back to naive UTC for querying.
"""
from datetime import datetime, date, timedelta, timezone
from typing import Optional, Tuple

JST = timezone(timedelta(hours=9))


def to_jst(dt: datetime) -> datetime:
    """Naive UTC -> aware JST"""
    return dt.replace(tzinfo=timezone.utc).astimezone(JST)


def to_utc_naive(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def jst_date(dt: Optional[datetime] = None) -> date:
    """Calendar date in JST for a naive UTC timestamp (default: now)."""
    return to_jst(dt or datetime.utcnow()).date()


def jst_day_start(day: date) -> datetime:
    """Naive UTC instant at which the given JST day begins."""
    return to_utc_naive(datetime(day.year, day.month, day.day, tzinfo=JST))


def _add_months(year: int, month: int, months: int) -> Tuple[int, int]:
    index = (year * 12 + (month - 1)) + months
    return index // 12, index % 12 + 1


def jst_month_start(year: int, month: int) -> datetime:
    return to_utc_naive(datetime(year, month, 1, tzinfo=JST))


def end_of_jst_month(dt: Optional[datetime] = None, months_ahead: int = 0) -> datetime:
    """Last second of the JST month ``months_ahead`` after ``dt``, as naive UTC."""
    local = to_jst(dt or datetime.utcnow())
    year, month = _add_months(local.year, local.month, months_ahead + 1)
    return jst_month_start(year, month) - timedelta(seconds=1)


def previous_day_range(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    today = jst_date(now)
    yesterday = today - timedelta(days=1)
    return jst_day_start(yesterday), jst_day_start(today)


def previous_week_range(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Previous Sunday-Saturday week in JST."""
    today = jst_date(now)
    # date.weekday(): Monday=0 ... Sunday=6
    days_since_sunday = (today.weekday() + 1) % 7
    this_sunday = today - timedelta(days=days_since_sunday)
    last_sunday = this_sunday - timedelta(days=7)
    return jst_day_start(last_sunday), jst_day_start(this_sunday)


def previous_month_range(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    local = to_jst(now or datetime.utcnow())
    prev_year, prev_month = _add_months(local.year, local.month, -1)
    return jst_month_start(prev_year, prev_month), jst_month_start(local.year, local.month)
