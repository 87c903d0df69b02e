"""In-memory repositories for lessons, mutation attempts and timelines."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

from lesson_calendar.domain.errors import NotFoundError
from lesson_calendar.domain.models import (
    Lesson,
    LessonStatus,
    Mutation,
    MutationState,
    TimeRange,
    TimelineEntry,
)
from lesson_calendar.services.intervals import overlaps


def _sort_key(lesson: Lesson) -> tuple[datetime, str]:
    return lesson.start_time, lesson.id


class LessonRepository:
    """Dict-backed store for Lesson instances, keyed by id.

    Writes are expected to come from the mutation protocol only. ``lock()``
    returns a re-entrant lock that the protocol holds across its final
    conflict check and the commit.
    """

    def __init__(self) -> None:
        self._store: dict[str, Lesson] = {}
        self._lock = threading.RLock()

    def lock(self) -> threading.RLock:
        return self._lock

    # -- reads -------------------------------------------------------------

    def get(self, lesson_id: str) -> Lesson | None:
        return self._store.get(lesson_id)

    def list_all(self) -> list[Lesson]:
        return sorted(self._store.values(), key=_sort_key)

    def list_group(self, group_id: str) -> list[Lesson]:
        """Return every lesson of a recurrence group, cancelled ones included."""
        return sorted(
            (l for l in self._store.values() if l.recurrence_group_id == group_id),
            key=_sort_key,
        )

    def query_lessons(
        self,
        time_range: TimeRange,
        class_id: str | None = None,
        teacher_id: str | None = None,
        status: LessonStatus | None = None,
    ) -> list[Lesson]:
        """Return lessons overlapping *time_range*, optionally filtered."""
        found = []
        for lesson in self._store.values():
            if class_id is not None and lesson.class_id != class_id:
                continue
            if teacher_id is not None and lesson.teacher_id != teacher_id:
                continue
            if status is not None and lesson.status != status:
                continue
            if overlaps(lesson.time_range, time_range):
                found.append(lesson)
        return sorted(found, key=_sort_key)

    # -- writes ------------------------------------------------------------

    def insert_lesson(self, lesson: Lesson) -> Lesson:
        with self._lock:
            if lesson.id in self._store:
                raise ValueError(f"Lesson {lesson.id} already exists")
            stored = lesson.model_copy(deep=True)
            self._store[stored.id] = stored
            return stored

    def update_lesson_range(self, lesson_id: str, time_range: TimeRange) -> Lesson:
        with self._lock:
            lesson = self._require(lesson_id)
            lesson.start_time = time_range.start
            lesson.end_time = time_range.end
            lesson.updated_at = datetime.now(timezone.utc)
            return lesson

    def update_lesson(self, lesson_id: str, **fields) -> Lesson:
        """Set plain attributes (title, room, teacher, ...) on a stored lesson."""
        with self._lock:
            lesson = self._require(lesson_id)
            for name, value in fields.items():
                setattr(lesson, name, value)
            lesson.updated_at = datetime.now(timezone.utc)
            return lesson

    def cancel_lesson(self, lesson_id: str) -> Lesson:
        with self._lock:
            lesson = self._require(lesson_id)
            lesson.status = LessonStatus.CANCELLED
            lesson.updated_at = datetime.now(timezone.utc)
            return lesson

    def _require(self, lesson_id: str) -> Lesson:
        lesson = self._store.get(lesson_id)
        if lesson is None:
            raise NotFoundError(f"Lesson {lesson_id} not found")
        return lesson


class MutationRepository:
    """Dict-backed store for Mutation attempts, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Mutation] = {}

    def add(self, mutation: Mutation) -> None:
        self._store[mutation.id] = mutation

    def get(self, mutation_id: str) -> Mutation | None:
        return self._store.get(mutation_id)

    def list_by_state(self, state: MutationState) -> list[Mutation]:
        return [m for m in self._store.values() if m.state == state]


class TimelineRepository:
    """List-backed store for TimelineEntry instances."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []

    def add(self, entry: TimelineEntry) -> None:
        self._entries.append(entry)

    def list_for_lesson(self, lesson_id: str) -> list[TimelineEntry]:
        return sorted(
            [e for e in self._entries if e.lesson_id == lesson_id],
            key=lambda e: e.timestamp,
        )
