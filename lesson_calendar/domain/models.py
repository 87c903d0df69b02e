"""Domain models for the lesson calendar."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from enum import StrEnum
from typing import Annotated, Literal, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class LessonStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Weekday(StrEnum):
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def number(self) -> int:
        """Monday-based index, matching ``date.weekday()``."""
        return list(Weekday).index(self)

    @classmethod
    def of(cls, day: date) -> Weekday:
        return list(cls)[day.weekday()]


class ViewMode(StrEnum):
    MONTH = "month"
    WEEK = "week"
    DAY = "day"


class ConflictKind(StrEnum):
    TEACHER = "teacher"
    ROOM = "room"
    BOTH = "both"


class MutationKind(StrEnum):
    CREATE = "create"
    CREATE_SERIES = "create_series"
    UPDATE = "update"
    UPDATE_SERIES = "update_series"


class MutationState(StrEnum):
    PROPOSED = "proposed"
    CHECKED = "checked"
    AWAITING_OVERRIDE = "awaiting_override"
    COMMITTED = "committed"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({MutationState.COMMITTED, MutationState.REJECTED})


class TimelineEntryType(StrEnum):
    CREATED = "created"
    RESCHEDULED = "rescheduled"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    CONFLICT_OVERRIDDEN = "conflict_overridden"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _lesson_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.replace(microsecond=0)


# Blank room labels mean "no room".
Room = Annotated[str | None, AfterValidator(_blank_to_none)]

# Lesson times are whole seconds; naive values are read as UTC.
LessonTime = Annotated[datetime, AfterValidator(_lesson_time)]


# ---------------------------------------------------------------------------
# Time ranges and recurrence rules
# ---------------------------------------------------------------------------


class TimeRange(BaseModel):
    """Half-open ``[start, end)`` range.

    The order of the bounds is not validated here: malformed ranges must
    be representable so that ``services.intervals.normalize`` can reject
    them explicitly.
    """

    model_config = ConfigDict(frozen=True)

    start: LessonTime
    end: LessonTime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class RecurrenceEnd(BaseModel):
    """At most one of ``until`` (inclusive date) and ``count``.

    Neither set means the series has no end of its own and is bounded by
    the configured hard cap.
    """

    until: date | None = None
    count: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _single_condition(self) -> RecurrenceEnd:
        if self.until is not None and self.count is not None:
            raise ValueError("end condition takes either until or count, not both")
        return self


class WeeklyRule(BaseModel):
    frequency: Literal["weekly"] = "weekly"
    interval: int = Field(default=1, ge=1)
    weekdays: list[Weekday] = Field(min_length=1)
    end: RecurrenceEnd = Field(default_factory=RecurrenceEnd)

    @field_validator("weekdays")
    @classmethod
    def _dedupe_weekdays(cls, value: list[Weekday]) -> list[Weekday]:
        return sorted(set(value), key=lambda d: d.number)


class MonthlyRule(BaseModel):
    """Repeats on the anchor's day-of-month, clamped in shorter months."""

    frequency: Literal["monthly"] = "monthly"
    interval: int = Field(default=1, ge=1)
    end: RecurrenceEnd = Field(default_factory=RecurrenceEnd)


RecurrenceRule = Annotated[Union[WeeklyRule, MonthlyRule], Field(discriminator="frequency")]


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class Lesson(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    description: str | None = None
    start_time: LessonTime
    end_time: LessonTime
    teacher_id: str
    class_id: str
    room: Room = None
    status: LessonStatus = LessonStatus.SCHEDULED
    recurrence_group_id: str | None = None
    is_recurring: bool = False
    recurrence_rule: RecurrenceRule | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _end_after_start(self) -> Lesson:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(start=self.start_time, end=self.end_time)

    @property
    def is_active(self) -> bool:
        return self.status != LessonStatus.CANCELLED


class LessonDraft(BaseModel):
    """Caller-supplied fields for a lesson that does not exist yet.

    The time range is deliberately unchecked; the mutation protocol
    rejects bad ranges with ``InvalidRangeError``.
    """

    title: str
    description: str | None = None
    start_time: LessonTime
    end_time: LessonTime
    teacher_id: str
    class_id: str
    room: Room = None


class LessonChanges(BaseModel):
    """Partial update of one lesson. Only fields explicitly set are applied."""

    title: str | None = None
    description: str | None = None
    start_time: LessonTime | None = None
    end_time: LessonTime | None = None
    teacher_id: str | None = None
    class_id: str | None = None
    room: Room = None
    status: LessonStatus | None = None


class SeriesChanges(BaseModel):
    """Partial update applied to every active lesson of a recurrence group."""

    title: str | None = None
    description: str | None = None
    teacher_id: str | None = None
    class_id: str | None = None
    room: Room = None
    status: LessonStatus | None = None
    shift_minutes: int | None = None


class ConflictQuery(BaseModel):
    proposed_range: TimeRange
    teacher_id: str
    room: Room = None
    exclude_lesson_id: str | None = None


class ConflictDetail(BaseModel):
    lesson_id: str
    title: str
    start_time: datetime
    end_time: datetime
    teacher_id: str
    room: Room = None
    kind: ConflictKind


class Notice(BaseModel):
    field: str
    reason: str
    options: list[str] = Field(default_factory=list)


class Mutation(BaseModel):
    """One check-then-commit attempt and the state it has reached."""

    id: str = Field(default_factory=_new_id)
    kind: MutationKind
    state: MutationState = MutationState.PROPOSED
    history: list[MutationState] = Field(default_factory=lambda: [MutationState.PROPOSED])
    target_ids: list[str] = Field(default_factory=list)
    changed_fields: list[str] = Field(default_factory=list)
    lessons: list[Lesson] = Field(default_factory=list)
    conflicts: list[ConflictDetail] = Field(default_factory=list)
    notices: list[Notice] = Field(default_factory=list)
    reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def transition(self, state: MutationState) -> None:
        self.state = state
        self.history.append(state)
        self.updated_at = _utcnow()

    @property
    def conflict_ids(self) -> set[str]:
        return {c.lesson_id for c in self.conflicts}


class CalendarWindow(BaseModel):
    view_mode: ViewMode
    anchor_date: date


class TimelineEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    lesson_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    type: TimelineEntryType
    payload: dict = Field(default_factory=dict)


class LessonStats(BaseModel):
    total: int = 0
    scheduled: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    upcoming_today: int = 0


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class CreateLessonRequest(BaseModel):
    lesson: LessonDraft
    recurrence: RecurrenceRule | None = None


class MoveLessonRequest(BaseModel):
    start_time: LessonTime
    end_time: LessonTime | None = None


class ConflictCheckRequest(BaseModel):
    start_time: LessonTime
    end_time: LessonTime
    teacher_id: str
    room: Room = None
    exclude_lesson_id: str | None = None


class ConflictCheckResponse(BaseModel):
    has_conflict: bool
    conflicts: list[ConflictDetail] = Field(default_factory=list)


class CalendarWindowResponse(BaseModel):
    view_mode: ViewMode
    anchor_date: date
    start: datetime
    end: datetime
    previous_anchor: date
    next_anchor: date
