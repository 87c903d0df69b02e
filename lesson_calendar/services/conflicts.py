"""Service for detecting teacher and room double-booking between lessons."""

from __future__ import annotations

from typing import Iterable

from lesson_calendar.domain.models import (
    ConflictDetail,
    ConflictKind,
    ConflictQuery,
    Lesson,
)
from lesson_calendar.services.intervals import overlaps


def find_conflicts(query: ConflictQuery, candidates: Iterable[Lesson]) -> list[Lesson]:
    """Return the candidate lessons that clash with *query*.

    A candidate clashes when it is not cancelled, is not the lesson being
    re-checked (``exclude_lesson_id``), overlaps the proposed range and
    shares the teacher or, when the query names one, the room.

    Overlap rule: ``a.start < b.end and b.start < a.end``; lessons that only
    touch at an endpoint do not clash. Results are ordered by start time,
    then id, and each lesson appears once.
    """
    found: dict[str, Lesson] = {}
    for lesson in candidates:
        if not lesson.is_active or lesson.id == query.exclude_lesson_id:
            continue
        if conflict_kind(query, lesson) is None:
            continue
        if overlaps(lesson.time_range, query.proposed_range):
            found.setdefault(lesson.id, lesson)
    return sorted(found.values(), key=lambda lesson: (lesson.start_time, lesson.id))


def conflict_kind(query: ConflictQuery, lesson: Lesson) -> ConflictKind | None:
    """Which shared resource puts *lesson* in the way of *query*, if any.

    Only the resource is compared here; the time overlap is checked by the
    caller.
    """
    same_teacher = lesson.teacher_id == query.teacher_id
    same_room = query.room is not None and lesson.room == query.room
    if same_teacher and same_room:
        return ConflictKind.BOTH
    if same_teacher:
        return ConflictKind.TEACHER
    if same_room:
        return ConflictKind.ROOM
    return None


def describe_conflicts(query: ConflictQuery, lessons: Iterable[Lesson]) -> list[ConflictDetail]:
    return [
        ConflictDetail(
            lesson_id=lesson.id,
            title=lesson.title,
            start_time=lesson.start_time,
            end_time=lesson.end_time,
            teacher_id=lesson.teacher_id,
            room=lesson.room,
            kind=conflict_kind(query, lesson),
        )
        for lesson in lessons
    ]
