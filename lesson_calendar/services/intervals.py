"""Half-open time interval helpers.

Every overlap comparison in the package goes through ``overlaps`` so that
creation, edits and drags agree on the boundary case: ranges that only
touch (``a.end == b.start``) do not overlap.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from lesson_calendar.domain.errors import InvalidRangeError
from lesson_calendar.domain.models import TimeRange


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    return a.start < b.end and b.start < a.end


def normalize(start: datetime, end: datetime) -> TimeRange:
    """Return a validated range.

    Naive datetimes are read as UTC and sub-second precision is dropped,
    as for every lesson time. Raises ``InvalidRangeError`` unless
    ``start < end``.
    """
    time_range = TimeRange(start=start, end=end)
    if time_range.start >= time_range.end:
        raise InvalidRangeError(
            f"start {time_range.start.isoformat()} must be before end "
            f"{time_range.end.isoformat()}"
        )
    return time_range


def span(ranges: Iterable[TimeRange]) -> TimeRange:
    """Smallest range covering all of *ranges*."""
    ranges = list(ranges)
    if not ranges:
        raise ValueError("span() needs at least one range")
    return TimeRange(
        start=min(r.start for r in ranges),
        end=max(r.end for r in ranges),
    )

