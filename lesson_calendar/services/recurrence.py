"""Service for expanding a recurring anchor lesson into concrete instances."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timedelta, tzinfo
from itertools import islice
from typing import Iterator

from dateutil.relativedelta import relativedelta
from dateutil.rrule import FR, MO, SA, SU, TH, TU, WE, WEEKLY, rrule

from lesson_calendar.domain.errors import InvalidRecurrenceError
from lesson_calendar.domain.models import (
    Lesson,
    LessonStatus,
    MonthlyRule,
    Notice,
    RecurrenceRule,
    Weekday,
    WeeklyRule,
)
from lesson_calendar.services.intervals import normalize

logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 500
MAX_SERIES_DAYS = 730

_SERIES_NAMESPACE = uuid.UUID("6f1c7a52-3d0e-4b8e-9a57-0c2f5e9b4d21")

_DAY_MAP = {
    Weekday.MO: MO,
    Weekday.TU: TU,
    Weekday.WE: WE,
    Weekday.TH: TH,
    Weekday.FR: FR,
    Weekday.SA: SA,
    Weekday.SU: SU,
}


def series_group_id(anchor_id: str) -> str:
    return str(uuid.uuid5(_SERIES_NAMESPACE, f"series/{anchor_id}"))


def instance_id(group_id: str, start: datetime) -> str:
    return str(uuid.uuid5(_SERIES_NAMESPACE, f"{group_id}/{start.isoformat()}"))


def validate_rule(rule: RecurrenceRule, anchor_start: datetime) -> None:
    """Raise ``InvalidRecurrenceError`` if *rule* breaks its invariants.

    Rules are already validated by pydantic on construction; this catches
    rules built with ``model_construct`` or mutated afterwards.
    """
    if not isinstance(rule, (WeeklyRule, MonthlyRule)):
        raise InvalidRecurrenceError(f"unsupported recurrence rule: {rule!r}")
    if rule.interval < 1:
        raise InvalidRecurrenceError("interval must be at least 1")
    if isinstance(rule, WeeklyRule) and not rule.weekdays:
        raise InvalidRecurrenceError("weekly rules need at least one weekday")

    end = rule.end
    if end.until is not None and end.count is not None:
        raise InvalidRecurrenceError("end condition takes either until or count, not both")
    if end.count is not None and end.count < 1:
        raise InvalidRecurrenceError("occurrence count must be at least 1")
    if end.until is not None and end.until < anchor_start.date():
        raise InvalidRecurrenceError(
            f"end date {end.until.isoformat()} is before the first lesson"
        )


def expand(
    anchor: Lesson,
    rule: RecurrenceRule,
    *,
    max_occurrences: int = MAX_OCCURRENCES,
    max_days: int = MAX_SERIES_DAYS,
    week_start: Weekday = Weekday.MO,
    tz: tzinfo | None = None,
) -> list[Lesson]:
    """Expand *anchor* and *rule* into the ordered list of series lessons."""
    lessons, _ = expand_with_notices(
        anchor,
        rule,
        max_occurrences=max_occurrences,
        max_days=max_days,
        week_start=week_start,
        tz=tz,
    )
    return lessons


def expand_with_notices(
    anchor: Lesson,
    rule: RecurrenceRule,
    *,
    max_occurrences: int = MAX_OCCURRENCES,
    max_days: int = MAX_SERIES_DAYS,
    week_start: Weekday = Weekday.MO,
    tz: tzinfo | None = None,
) -> tuple[list[Lesson], list[Notice]]:
    """Expand a series and report anything the caller should confirm.

    Every instance keeps the anchor's time-of-day and duration and shares
    one ``recurrence_group_id``. The first instance keeps the anchor's id
    and carries the rule; the others get ids derived from the group id and
    their start, so expanding the same anchor twice yields equal lists.

    With *tz* the series keeps the anchor's wall-clock time in that zone,
    so lessons stay at the same local hour across DST changes. Without it
    the anchor's own UTC offset is used throughout.

    Expansion stops at the rule's end condition or at the hard cap
    (*max_occurrences* lessons or *max_days* after the anchor), whichever
    comes first.
    """
    anchor_range = normalize(anchor.start_time, anchor.end_time)
    dtstart = anchor_range.start
    if tz is not None:
        dtstart = dtstart.astimezone(tz)
    validate_rule(rule, dtstart)
    duration = anchor_range.duration

    cap_end = dtstart + timedelta(days=max_days)
    until_end = None
    if rule.end.until is not None:
        until_end = datetime.combine(rule.end.until, time.max, tzinfo=dtstart.tzinfo)
    limit = cap_end if until_end is None else min(until_end, cap_end)

    take = max_occurrences
    if rule.end.count is not None:
        take = min(rule.end.count, max_occurrences)

    if isinstance(rule, WeeklyRule):
        candidates = _weekly_starts(dtstart, rule, limit, week_start)
    else:
        candidates = _monthly_starts(dtstart, rule, limit)

    starts = list(islice(candidates, take + 1))
    overflow = len(starts) > take
    starts = starts[:take]

    if not starts:
        raise InvalidRecurrenceError("recurrence rule yields no lessons")

    group_id = anchor.recurrence_group_id or series_group_id(anchor.id)
    lessons = [
        anchor.model_copy(
            update={
                "id": anchor.id if index == 0 else instance_id(group_id, start),
                "start_time": start,
                "end_time": start + duration,
                "status": LessonStatus.SCHEDULED,
                "recurrence_group_id": group_id,
                "is_recurring": index == 0,
                "recurrence_rule": rule if index == 0 else None,
            }
        )
        for index, start in enumerate(starts)
    ]

    notices: list[Notice] = []

    if isinstance(rule, WeeklyRule):
        anchor_day = Weekday.of(dtstart.date())
        if anchor_day not in rule.weekdays:
            first = starts[0].date().isoformat()
            logger.warning(
                "anchor %s falls on %s, outside weekdays %s; series starts %s",
                anchor.id,
                anchor_day,
                ",".join(rule.weekdays),
                first,
            )
            notices.append(
                Notice(
                    field="weekdays",
                    reason=(
                        f"The first lesson date {dtstart.date().isoformat()} is a "
                        f"{anchor_day} which is not one of the chosen weekdays; "
                        f"the series starts on {first} instead"
                    ),
                    options=[f"Start on {first}", f"Add {anchor_day} to the weekdays"],
                )
            )

    day_capped = until_end is None or until_end > cap_end
    count_short = rule.end.count is None or len(starts) < rule.end.count
    if count_short and (overflow or day_capped):
        last = starts[-1].date().isoformat()
        logger.warning(
            "series %s truncated at %d lessons (cap %d lessons / %d days)",
            group_id,
            len(starts),
            max_occurrences,
            max_days,
        )
        notices.append(
            Notice(
                field="end",
                reason=(
                    f"The series was limited to {len(starts)} lessons ending {last} "
                    f"(at most {max_occurrences} lessons or {max_days} days)"
                ),
                options=["Add an end date", "Add an occurrence count"],
            )
        )

    return lessons, notices


def _weekly_starts(
    dtstart: datetime,
    rule: WeeklyRule,
    limit: datetime,
    week_start: Weekday,
) -> Iterator[datetime]:
    # rrule counts the interval in weeks beginning on ``wkst`` and only
    # yields weekdays on or after dtstart within the first week.
    return iter(
        rrule(
            WEEKLY,
            dtstart=dtstart,
            interval=rule.interval,
            byweekday=[_DAY_MAP[day] for day in rule.weekdays],
            wkst=_DAY_MAP[week_start],
            until=limit,
        )
    )


def _monthly_starts(
    dtstart: datetime,
    rule: MonthlyRule,
    limit: datetime,
) -> Iterator[datetime]:
    # Offsets are taken from the anchor each time so a 31st clamped to the
    # 30th in one month is back on the 31st in the next long month.
    index = 0
    while True:
        start = dtstart + relativedelta(months=index * rule.interval)
        if start > limit:
            return
        yield start
        index += 1
