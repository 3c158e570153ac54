"""HARVEST — Country Timezones & Window Alignment.

Window boundaries are naive UTC datetimes. The only value kept on a
country's local wall clock is ``last_report_created_at``.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo

from app.models.report_models import Aggregation

COUNTRY_TIMEZONES = {
    # Pacific
    "US": "America/Los_Angeles",
    "MX": "America/Los_Angeles",
    "CA": "America/Los_Angeles",
    # GMT
    "DE": "Europe/London",
    "ES": "Europe/London",
    "FR": "Europe/London",
    "IT": "Europe/London",
    "GB": "Europe/London",
    # JST
    "JP": "Asia/Tokyo",
}

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


def timezone_for_country(country_code: str) -> ZoneInfo:
    """IANA zone for a marketplace country, UTC when unknown."""
    return ZoneInfo(COUNTRY_TIMEZONES.get((country_code or "").upper(), "UTC"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_naive(value: datetime) -> datetime:
    """Normalize to a naive UTC datetime. Naive input is taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local_naive(value: datetime, country_code: str) -> datetime:
    """Wall-clock time in the country's zone, with tzinfo dropped."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone_for_country(country_code)).replace(tzinfo=None)


def local_to_utc_naive(value: datetime, country_code: str) -> datetime:
    """Inverse of ``to_local_naive``. Ambiguous wall times resolve to the earlier instant."""
    aware = value.replace(tzinfo=timezone_for_country(country_code))
    return aware.astimezone(timezone.utc).replace(tzinfo=None)


def granularity(aggregation: Aggregation) -> timedelta:
    return HOUR if aggregation == Aggregation.HOURLY else DAY


def period_start(value: datetime, aggregation: Aggregation) -> datetime:
    """Floor a UTC instant to its hourly or daily window boundary."""
    value = to_utc_naive(value)
    if aggregation == Aggregation.HOURLY:
        return value.replace(minute=0, second=0, microsecond=0)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def is_aligned(value: datetime, aggregation: Aggregation) -> bool:
    value = to_utc_naive(value)
    return period_start(value, aggregation) == value


def window_end(window_start: datetime, aggregation: Aggregation) -> datetime:
    return window_start + granularity(aggregation)


def enumerate_windows(
    start: datetime, end: datetime, aggregation: Aggregation
) -> Iterator[datetime]:
    """Yield every boundary in ``[start, end)`` at the aggregation's step."""
    step = granularity(aggregation)
    current = start
    while current < end:
        yield current
        current += step
