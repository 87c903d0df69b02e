"""Service for summarizing lesson counts for dashboards."""

from __future__ import annotations

from collections import Counter
from typing import Iterable

from lesson_calendar.domain.models import Lesson, LessonStats, LessonStatus, TimeRange


def summarize(lessons: Iterable[Lesson], today: TimeRange) -> LessonStats:
    """Count lessons per status and the active ones starting within *today*."""
    lessons = list(lessons)
    by_status = Counter(lesson.status for lesson in lessons)
    upcoming = sum(
        1
        for lesson in lessons
        if lesson.is_active and today.start <= lesson.start_time < today.end
    )
    return LessonStats(
        total=len(lessons),
        scheduled=by_status[LessonStatus.SCHEDULED],
        in_progress=by_status[LessonStatus.IN_PROGRESS],
        completed=by_status[LessonStatus.COMPLETED],
        cancelled=by_status[LessonStatus.CANCELLED],
        upcoming_today=upcoming,
    )
