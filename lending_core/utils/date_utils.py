"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from lending_core.config import settings


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def business_today() -> date:
    """Today's date in the configured business timezone"""
    return datetime.now(ZoneInfo(settings.business_timezone)).date()


def days_ago(as_of: date, days: int) -> date:
    return as_of - timedelta(days=days)


def months_ago(as_of: date, months: int) -> date:
    """Same day-of-month `months` calendar months earlier, clamped to month end"""
    month_index = as_of.year * 12 + (as_of.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(as_of.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def start_of_day_utc(day: date) -> datetime:
    """Midnight UTC at the start of `day`, for timestamp range filters"""
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
