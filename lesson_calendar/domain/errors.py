"""Exceptions raised by the scheduling core."""

from __future__ import annotations

from lesson_calendar.domain.models import ConflictDetail


class LessonCalendarError(Exception):
    """Base class for every error raised by this package."""


class InvalidRangeError(LessonCalendarError, ValueError):
    """A time range whose start is not strictly before its end."""


class InvalidRecurrenceError(LessonCalendarError, ValueError):
    """A recurrence rule that breaks its invariants or yields no lessons."""


class NotFoundError(LessonCalendarError, LookupError):
    """A referenced lesson, series or mutation does not exist."""


class InvalidTransitionError(LessonCalendarError):
    """The mutation is already committed or rejected."""


class ConflictError(LessonCalendarError):
    """Commit attempted while conflicts are outstanding and not overridden."""

    def __init__(self, conflicts: list[ConflictDetail], message: str | None = None) -> None:
        self.conflicts = conflicts
        super().__init__(
            message or f"{len(conflicts)} conflicting lesson(s); override required"
        )


class ConcurrencyError(ConflictError):
    """The pre-commit recheck found conflicts that were not shown before."""

    def __init__(
        self,
        conflicts: list[ConflictDetail],
        new_conflicts: list[ConflictDetail],
    ) -> None:
        self.new_conflicts = new_conflicts
        super().__init__(
            conflicts,
            f"{len(new_conflicts)} new conflicting lesson(s) appeared since the last check",
        )
