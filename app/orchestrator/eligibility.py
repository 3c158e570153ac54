"""HARVEST — Eligibility Engine.

Decides whether a dataset window should get a new report now. Pure: no I/O,
``now`` is always passed in.

Each aggregation has fixed checkpoints (hours since window start) at which
upstream attribution is expected to have materially changed. A window is
eligible when its age sits within ±1h of a checkpoint and no report has been
created at that checkpoint or a later one.

Ages are measured on the country's local wall clock. ``last_report_created_at``
is stored there already; the UTC window start and ``now`` are moved onto the
same clock before subtracting.
"""

import math
from datetime import datetime, timedelta
from typing import Optional, Tuple

from app.core.timezones import local_to_utc_naive, to_local_naive, to_utc_naive
from app.models.report_models import Aggregation

ELIGIBLE_OFFSETS = {
    Aggregation.DAILY: tuple(days * 24 for days in (1, 3, 5, 7, 14, 30)),
    Aggregation.HOURLY: (24, 72, 312),
}

OFFSET_TOLERANCE_HOURS = 1


def eligible_offsets(aggregation: Aggregation) -> Tuple[int, ...]:
    return ELIGIBLE_OFFSETS[Aggregation(aggregation)]


def _hours_between(later: datetime, earlier: datetime) -> int:
    return math.floor((later - earlier) / timedelta(hours=1))


def window_age_hours(window_start: datetime, country_code: str, now: datetime) -> int:
    """Whole hours elapsed since ``window_start`` on the local wall clock."""
    return _hours_between(
        to_local_naive(now, country_code), to_local_naive(window_start, country_code)
    )


def matching_offset(
    window_start: datetime,
    aggregation: Aggregation,
    country_code: str,
    now: datetime,
) -> Optional[int]:
    """The smallest checkpoint within tolerance of the window's age, if any."""
    age = window_age_hours(window_start, country_code, now)
    if age < 0:
        return None
    for offset in eligible_offsets(aggregation):
        if abs(age - offset) <= OFFSET_TOLERANCE_HOURS:
            return offset
    return None


def _created_age_hours(
    window_start: datetime, country_code: str, last_report_created_at: datetime
) -> int:
    return _hours_between(
        last_report_created_at, to_local_naive(window_start, country_code)
    )


def is_eligible(
    window_start: datetime,
    aggregation: Aggregation,
    last_report_created_at: Optional[datetime],
    country_code: str,
    now: datetime,
) -> bool:
    """Whether a report should be created for this window right now."""
    offset = matching_offset(window_start, aggregation, country_code, now)
    if offset is None:
        return False
    if last_report_created_at is None:
        return True
    created_age = _created_age_hours(window_start, country_code, last_report_created_at)
    return created_age < offset


def next_refresh_time(
    window_start: datetime,
    aggregation: Aggregation,
    last_report_created_at: Optional[datetime],
    country_code: str,
    now: datetime,
) -> Optional[datetime]:
    """Earliest UTC instant (naive) at which the window may next be eligible.

    Returns ``now`` when the window is eligible at this moment, and ``None``
    once every checkpoint has either passed or been served.
    """
    now_utc = to_utc_naive(now)
    window_start = to_utc_naive(window_start)
    if is_eligible(window_start, aggregation, last_report_created_at, country_code, now):
        return now_utc

    age = window_age_hours(window_start, country_code, now)
    created_age = (
        _created_age_hours(window_start, country_code, last_report_created_at)
        if last_report_created_at is not None
        else None
    )
    local_start = to_local_naive(window_start, country_code)
    for offset in eligible_offsets(aggregation):
        if created_age is not None and created_age >= offset:
            continue
        opens_at = offset - OFFSET_TOLERANCE_HOURS
        if age < opens_at:
            return local_to_utc_naive(local_start + timedelta(hours=opens_at), country_code)
    return None
