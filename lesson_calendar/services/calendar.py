"""Service for turning a calendar view into the time range it displays.

All functions are pure: the anchor date and, for ``today_window``, the
current date are passed in by the caller.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo

import dateparser
from dateutil.relativedelta import relativedelta

from lesson_calendar.domain.models import CalendarWindow, TimeRange, ViewMode, Weekday


def resolve(
    view_mode: ViewMode,
    anchor_date: date,
    week_start: Weekday = Weekday.MO,
    tz: tzinfo = timezone.utc,
) -> TimeRange:
    """Return the half-open range shown by *view_mode* around *anchor_date*.

    - day: that day, midnight to midnight
    - week: the seven days starting on *week_start* that contain the anchor
    - month: first of the anchor's month up to the first of the next month
    """
    if view_mode == ViewMode.DAY:
        first = anchor_date
        last = anchor_date + timedelta(days=1)
    elif view_mode == ViewMode.WEEK:
        first = anchor_date - timedelta(days=(anchor_date.weekday() - week_start.number) % 7)
        last = first + timedelta(days=7)
    elif view_mode == ViewMode.MONTH:
        first = anchor_date.replace(day=1)
        last = first + relativedelta(months=1)
    else:
        raise ValueError(f"unknown view mode: {view_mode!r}")
    return TimeRange(start=_midnight(first, tz), end=_midnight(last, tz))


def resolve_window(
    window: CalendarWindow,
    week_start: Weekday = Weekday.MO,
    tz: tzinfo = timezone.utc,
) -> TimeRange:
    return resolve(window.view_mode, window.anchor_date, week_start, tz)


def navigate(window: CalendarWindow, step: int) -> CalendarWindow:
    """Move the window *step* views forward (negative: backward)."""
    if window.view_mode == ViewMode.DAY:
        anchor = window.anchor_date + timedelta(days=step)
    elif window.view_mode == ViewMode.WEEK:
        anchor = window.anchor_date + timedelta(weeks=step)
    else:
        anchor = window.anchor_date + relativedelta(months=step)
    return window.model_copy(update={"anchor_date": anchor})


def prev_window(window: CalendarWindow) -> CalendarWindow:
    return navigate(window, -1)


def next_window(window: CalendarWindow) -> CalendarWindow:
    return navigate(window, 1)


def today_window(window: CalendarWindow, today: date) -> CalendarWindow:
    return window.model_copy(update={"anchor_date": today})


def parse_anchor(text: str, today: date) -> date:
    """Parse a typed "go to date" entry such as ``2024-03-01`` or ``next friday``.

    Relative phrases are read against *today*. Raises ``ValueError`` if
    nothing date-like is found.
    """
    settings = {
        "PREFER_DATES_FROM": "future",
        "RELATIVE_BASE": datetime.combine(today, time()),
        "RETURN_AS_TIMEZONE_AWARE": False,
    }
    result = dateparser.parse(text, settings=settings)
    if result is None:
        raise ValueError(f"could not read a date from {text!r}")
    return result.date()


def _midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(), tzinfo=tz)
