"""Domain events published after a mutation is committed."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LessonsCreated(BaseModel):
    """Fired when a single lesson or a whole series has been inserted."""

    mutation_id: str
    lesson_ids: list[str]
    recurrence_group_id: str | None = None


class LessonRescheduled(BaseModel):
    """Fired when a lesson's time range changed (edit or drag)."""

    mutation_id: str
    lesson_id: str
    previous_start: datetime
    previous_end: datetime
    start_time: datetime
    end_time: datetime


class LessonUpdated(BaseModel):
    """Fired when non-time fields of a lesson changed."""

    mutation_id: str
    lesson_id: str
    fields: list[str]


class LessonCancelled(BaseModel):
    """Fired when a lesson was soft-retired."""

    mutation_id: str
    lesson_id: str


class ConflictOverridden(BaseModel):
    """Fired when a caller committed despite known conflicts."""

    mutation_id: str
    lesson_ids: list[str]
    conflicting_lesson_ids: list[str]
