"""Domain event handlers that keep each lesson's timeline."""

from __future__ import annotations

import logging

from lesson_calendar.domain.bus import EventBus
from lesson_calendar.domain.events import (
    ConflictOverridden,
    LessonCancelled,
    LessonRescheduled,
    LessonsCreated,
    LessonUpdated,
)
from lesson_calendar.domain.models import TimelineEntry, TimelineEntryType
from lesson_calendar.repos.memory import TimelineRepository

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Wires lesson-event handlers to the bus."""

    def __init__(self, bus: EventBus, timeline_repo: TimelineRepository) -> None:
        self.bus = bus
        self.timeline_repo = timeline_repo
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(LessonsCreated, self.on_lessons_created)
        self.bus.subscribe(LessonRescheduled, self.on_lesson_rescheduled)
        self.bus.subscribe(LessonUpdated, self.on_lesson_updated)
        self.bus.subscribe(LessonCancelled, self.on_lesson_cancelled)
        self.bus.subscribe(ConflictOverridden, self.on_conflict_overridden)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_lessons_created(self, event: LessonsCreated) -> None:
        for lesson_id in event.lesson_ids:
            self._record(
                lesson_id,
                TimelineEntryType.CREATED,
                {
                    "mutation_id": event.mutation_id,
                    "recurrence_group_id": event.recurrence_group_id,
                },
            )

    def on_lesson_rescheduled(self, event: LessonRescheduled) -> None:
        self._record(
            event.lesson_id,
            TimelineEntryType.RESCHEDULED,
            {
                "mutation_id": event.mutation_id,
                "from": [event.previous_start.isoformat(), event.previous_end.isoformat()],
                "to": [event.start_time.isoformat(), event.end_time.isoformat()],
            },
        )

    def on_lesson_updated(self, event: LessonUpdated) -> None:
        self._record(
            event.lesson_id,
            TimelineEntryType.UPDATED,
            {"mutation_id": event.mutation_id, "fields": event.fields},
        )

    def on_lesson_cancelled(self, event: LessonCancelled) -> None:
        self._record(
            event.lesson_id,
            TimelineEntryType.CANCELLED,
            {"mutation_id": event.mutation_id},
        )

    def on_conflict_overridden(self, event: ConflictOverridden) -> None:
        for lesson_id in event.lesson_ids:
            self._record(
                lesson_id,
                TimelineEntryType.CONFLICT_OVERRIDDEN,
                {
                    "mutation_id": event.mutation_id,
                    "conflicting_lesson_ids": event.conflicting_lesson_ids,
                },
            )

    def _record(self, lesson_id: str, entry_type: TimelineEntryType, payload: dict) -> None:
        self.timeline_repo.add(
            TimelineEntry(lesson_id=lesson_id, type=entry_type, payload=payload)
        )
        logger.debug("timeline %s for lesson %s", entry_type, lesson_id)
