"""Check-then-commit protocol for creating, editing, moving and cancelling lessons.

Each call to a ``propose_*``/``mutate_*`` entry point opens a ``Mutation``
and drives it through::

    proposed -> checked -> committed            (no conflicts, no notices)
                        -> awaiting_override    (conflicts or notices surfaced, nothing written)
    proposed -> rejected                        (invalid input, caller cancel)

A mutation waiting for an override is finished with ``confirm_override``
(commit despite the conflicts and notices shown), ``commit`` (commit only
if the conflicts have gone away and there are no notices) or ``cancel``.
Only the commit step writes to the lesson repository.

The final conflict check and the commit run while holding the
repository's lock, so two callers in the same process cannot both commit
overlapping lessons. A store shared between processes needs its own
exclusion constraint on (teacher, range) and (room, range); the recheck
alone only narrows that window.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator

from lesson_calendar.config import Settings
from lesson_calendar.domain.bus import EventBus
from lesson_calendar.domain.errors import (
    ConcurrencyError,
    ConflictError,
    InvalidRangeError,
    InvalidRecurrenceError,
    InvalidTransitionError,
    NotFoundError,
)
from lesson_calendar.domain.events import (
    ConflictOverridden,
    LessonCancelled,
    LessonRescheduled,
    LessonsCreated,
    LessonUpdated,
)
from lesson_calendar.domain.models import (
    TERMINAL_STATES,
    ConflictDetail,
    ConflictQuery,
    Lesson,
    LessonChanges,
    LessonDraft,
    LessonStatus,
    Mutation,
    MutationKind,
    MutationState,
    RecurrenceRule,
    SeriesChanges,
)
from lesson_calendar.repos.memory import LessonRepository, MutationRepository
from lesson_calendar.services.conflicts import describe_conflicts, find_conflicts
from lesson_calendar.services.intervals import normalize, span
from lesson_calendar.services.recurrence import expand_with_notices

logger = logging.getLogger(__name__)

# Fields that may be cleared by passing an explicit None.
_NULLABLE_FIELDS = frozenset({"description", "room"})
_TIME_FIELDS = frozenset({"start_time", "end_time"})


def _explicit_updates(changes: LessonChanges | SeriesChanges) -> dict:
    return {
        name: value
        for name, value in changes.model_dump(exclude_unset=True).items()
        if value is not None or name in _NULLABLE_FIELDS
    }


class MutationService:
    """Runs lesson mutations through the check-then-commit state machine."""

    def __init__(
        self,
        lesson_repo: LessonRepository,
        mutation_repo: MutationRepository,
        bus: EventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.lesson_repo = lesson_repo
        self.mutation_repo = mutation_repo
        self.bus = bus or EventBus()
        self.settings = settings or Settings()

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------

    def get(self, mutation_id: str) -> Mutation:
        mutation = self.mutation_repo.get(mutation_id)
        if mutation is None:
            raise NotFoundError(f"Mutation {mutation_id} not found")
        return mutation

    def check_conflicts(self, query: ConflictQuery) -> list[ConflictDetail]:
        """Run the conflict detector against stored lessons without mutating."""
        time_range = normalize(query.proposed_range.start, query.proposed_range.end)
        query = query.model_copy(update={"proposed_range": time_range})
        candidates = self.lesson_repo.query_lessons(time_range)
        return describe_conflicts(query, find_conflicts(query, candidates))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def propose_create(self, draft: LessonDraft) -> Mutation:
        """Create one non-recurring lesson."""
        mutation = self._open(MutationKind.CREATE)
        with self._rejecting_invalid(mutation):
            mutation.lessons = [self._lesson_from_draft(draft)]
        return self._settle(mutation)

    def propose_series_create(self, draft: LessonDraft, rule: RecurrenceRule) -> Mutation:
        """Create a recurring series; *draft* is the anchor lesson."""
        mutation = self._open(MutationKind.CREATE_SERIES)
        with self._rejecting_invalid(mutation):
            anchor = self._lesson_from_draft(draft)
            lessons, notices = expand_with_notices(
                anchor,
                rule,
                max_occurrences=self.settings.max_occurrences,
                max_days=self.settings.max_series_days,
                week_start=self.settings.week_start,
                tz=self.settings.tzinfo,
            )
            mutation.lessons = lessons
            mutation.notices = notices
        return self._settle(mutation)

    def mutate_instance(self, lesson_id: str, changes: LessonChanges) -> Mutation:
        """Change one lesson only, even when it belongs to a series."""
        mutation = self._open(MutationKind.UPDATE)
        with self._rejecting_invalid(mutation):
            current = self._require_lesson(lesson_id)
            updates = _explicit_updates(changes)
            if _TIME_FIELDS & updates.keys():
                time_range = normalize(
                    updates.get("start_time", current.start_time),
                    updates.get("end_time", current.end_time),
                )
                updates["start_time"] = time_range.start
                updates["end_time"] = time_range.end
            mutation.target_ids = [lesson_id]
            mutation.changed_fields = sorted(updates)
            mutation.lessons = [current.model_copy(update=updates)]
        return self._settle(mutation)

    def propose_move(
        self,
        lesson_id: str,
        start_time: datetime,
        end_time: datetime | None = None,
    ) -> Mutation:
        """Move a lesson to a new slot, keeping its duration unless *end_time* is given."""
        if end_time is None:
            current = self.lesson_repo.get(lesson_id)
            if current is not None:
                end_time = start_time + (current.end_time - current.start_time)
        return self.mutate_instance(
            lesson_id, LessonChanges(start_time=start_time, end_time=end_time)
        )

    def cancel_lesson(self, lesson_id: str) -> Mutation:
        return self.mutate_instance(lesson_id, LessonChanges(status=LessonStatus.CANCELLED))

    def mutate_series(self, group_id: str, changes: SeriesChanges) -> Mutation:
        """Apply *changes* to every non-cancelled lesson of a recurrence group.

        ``shift_minutes`` moves each lesson by the same offset. Lessons of
        the group are not checked against each other.
        """
        mutation = self._open(MutationKind.UPDATE_SERIES)
        with self._rejecting_invalid(mutation):
            members = [l for l in self.lesson_repo.list_group(group_id) if l.is_active]
            if not members:
                raise NotFoundError(f"No active lessons in series {group_id}")

            updates = _explicit_updates(changes)
            shift = timedelta(minutes=updates.pop("shift_minutes", 0))
            fields = set(updates)
            if shift:
                fields |= _TIME_FIELDS

            mutation.target_ids = [m.id for m in members]
            mutation.changed_fields = sorted(fields)
            mutation.lessons = [
                m.model_copy(
                    update={
                        **updates,
                        "start_time": m.start_time + shift,
                        "end_time": m.end_time + shift,
                    }
                )
                for m in members
            ]
        return self._settle(mutation)

    def cancel_series(self, group_id: str) -> Mutation:
        return self.mutate_series(group_id, SeriesChanges(status=LessonStatus.CANCELLED))

    def commit(self, mutation_id: str) -> Mutation:
        """Commit without overriding: re-check and raise if conflicts or notices remain."""
        mutation = self._require_open(mutation_id)
        with self.lesson_repo.lock():
            self._refresh(mutation)
            conflicts = self._check(mutation)
            if conflicts:
                mutation.conflicts = conflicts
                if mutation.state != MutationState.AWAITING_OVERRIDE:
                    mutation.transition(MutationState.AWAITING_OVERRIDE)
                raise ConflictError(conflicts)
            if mutation.notices:
                raise InvalidTransitionError(
                    f"Mutation {mutation.id} has notices that must be confirmed"
                )
            mutation.conflicts = []
            self._commit(mutation)
        return mutation

    def confirm_override(self, mutation_id: str) -> Mutation:
        """Commit despite the conflicts and notices the caller has been shown.

        The check is run once more first. If it finds conflicts that were
        not in the list the caller confirmed, the mutation stays in
        ``awaiting_override`` with the refreshed list and
        ``ConcurrencyError`` is raised.
        """
        mutation = self._require_open(mutation_id)
        if mutation.state != MutationState.AWAITING_OVERRIDE:
            raise InvalidTransitionError(
                f"Mutation {mutation_id} has no conflicts to override ({mutation.state})"
            )

        with self.lesson_repo.lock():
            self._refresh(mutation)
            conflicts = self._check(mutation)
            shown = mutation.conflict_ids
            new_conflicts = [c for c in conflicts if c.lesson_id not in shown]
            if new_conflicts:
                mutation.conflicts = conflicts
                mutation.transition(MutationState.AWAITING_OVERRIDE)
                logger.warning(
                    "mutation %s: %d new conflict(s) since override was requested",
                    mutation.id,
                    len(new_conflicts),
                )
                raise ConcurrencyError(conflicts, new_conflicts)
            mutation.conflicts = conflicts
            self._commit(mutation, overridden=conflicts)
        return mutation

    def cancel(self, mutation_id: str) -> Mutation:
        """Abandon an open mutation; nothing is written."""
        mutation = self._require_open(mutation_id)
        self._reject(mutation, "cancelled by caller")
        return mutation

    # ------------------------------------------------------------------
    # State machine internals
    # ------------------------------------------------------------------

    def _open(self, kind: MutationKind) -> Mutation:
        mutation = Mutation(kind=kind)
        self.mutation_repo.add(mutation)
        return mutation

    def _require_open(self, mutation_id: str) -> Mutation:
        mutation = self.get(mutation_id)
        if mutation.state in TERMINAL_STATES:
            raise InvalidTransitionError(f"Mutation {mutation_id} is already {mutation.state}")
        return mutation

    def _require_lesson(self, lesson_id: str) -> Lesson:
        lesson = self.lesson_repo.get(lesson_id)
        if lesson is None:
            raise NotFoundError(f"Lesson {lesson_id} not found")
        return lesson

    @contextmanager
    def _rejecting_invalid(self, mutation: Mutation) -> Iterator[None]:
        try:
            yield
        except (InvalidRangeError, InvalidRecurrenceError, NotFoundError) as exc:
            self._reject(mutation, str(exc))
            raise

    def _reject(self, mutation: Mutation, reason: str) -> None:
        mutation.reason = reason
        mutation.transition(MutationState.REJECTED)
        logger.info("mutation %s rejected: %s", mutation.id, reason)

    def _lesson_from_draft(self, draft: LessonDraft) -> Lesson:
        time_range = normalize(draft.start_time, draft.end_time)
        return Lesson(
            **draft.model_dump(exclude={"start_time", "end_time"}),
            start_time=time_range.start,
            end_time=time_range.end,
        )

    def _settle(self, mutation: Mutation) -> Mutation:
        with self.lesson_repo.lock():
            conflicts = self._check(mutation)
            mutation.transition(MutationState.CHECKED)
            if not conflicts and not mutation.notices:
                self._commit(mutation)
                return mutation
            mutation.conflicts = conflicts
            mutation.transition(MutationState.AWAITING_OVERRIDE)
        logger.info(
            "mutation %s (%s) awaiting override: conflicts with [%s], notices on [%s]",
            mutation.id,
            mutation.kind,
            ", ".join(c.lesson_id for c in conflicts),
            ", ".join(n.field for n in mutation.notices),
        )
        return mutation

    def _check(self, mutation: Mutation) -> list[ConflictDetail]:
        active = [lesson for lesson in mutation.lessons if lesson.is_active]
        if not active:
            return []

        # Lessons being changed are represented by their proposed versions.
        own_ids = set(mutation.target_ids) | {lesson.id for lesson in mutation.lessons}
        window = span(lesson.time_range for lesson in active)
        candidates = [
            c for c in self.lesson_repo.query_lessons(window) if c.id not in own_ids
        ]

        found: dict[str, ConflictDetail] = {}
        for lesson in active:
            query = ConflictQuery(
                proposed_range=lesson.time_range,
                teacher_id=lesson.teacher_id,
                room=lesson.room,
                exclude_lesson_id=lesson.id,
            )
            for detail in describe_conflicts(query, find_conflicts(query, candidates)):
                found.setdefault(detail.lesson_id, detail)
        return sorted(found.values(), key=lambda d: (d.start_time, d.lesson_id))

    def _refresh(self, mutation: Mutation) -> None:
        """Re-base update snapshots on the stored lessons before a late check.

        Fields this mutation does not touch may have been changed by someone
        else since it was proposed; those newer values are kept.
        """
        if mutation.kind not in (MutationKind.UPDATE, MutationKind.UPDATE_SERIES):
            return
        mutation.lessons = [
            self._require_lesson(snapshot.id).model_copy(
                update={name: getattr(snapshot, name) for name in mutation.changed_fields}
            )
            for snapshot in mutation.lessons
        ]

    def _commit(
        self,
        mutation: Mutation,
        overridden: list[ConflictDetail] | None = None,
    ) -> None:
        events: list = []
        with self.lesson_repo.lock():
            if mutation.kind in (MutationKind.CREATE, MutationKind.CREATE_SERIES):
                for lesson in mutation.lessons:
                    self.lesson_repo.insert_lesson(lesson)
                events.append(
                    LessonsCreated(
                        mutation_id=mutation.id,
                        lesson_ids=[lesson.id for lesson in mutation.lessons],
                        recurrence_group_id=mutation.lessons[0].recurrence_group_id,
                    )
                )
            else:
                # Resolve every target before the first write.
                currents = {tid: self._require_lesson(tid) for tid in mutation.target_ids}
                for snapshot in mutation.lessons:
                    events.extend(self._apply(mutation, currents[snapshot.id], snapshot))

            mutation.transition(MutationState.COMMITTED)

        if overridden:
            events.append(
                ConflictOverridden(
                    mutation_id=mutation.id,
                    lesson_ids=[lesson.id for lesson in mutation.lessons],
                    conflicting_lesson_ids=[c.lesson_id for c in overridden],
                )
            )
            logger.warning(
                "mutation %s committed over %d conflict(s)", mutation.id, len(overridden)
            )
        logger.info(
            "mutation %s (%s) committed for %d lesson(s)",
            mutation.id,
            mutation.kind,
            len(mutation.lessons),
        )

        for event in events:
            self.bus.publish(event)

    def _apply(self, mutation: Mutation, current: Lesson, snapshot: Lesson) -> list:
        fields = set(mutation.changed_fields)
        events: list = []

        if fields & _TIME_FIELDS and current.time_range != snapshot.time_range:
            previous = current.time_range
            self.lesson_repo.update_lesson_range(current.id, snapshot.time_range)
            events.append(
                LessonRescheduled(
                    mutation_id=mutation.id,
                    lesson_id=current.id,
                    previous_start=previous.start,
                    previous_end=previous.end,
                    start_time=snapshot.start_time,
                    end_time=snapshot.end_time,
                )
            )

        cancelling = (
            "status" in fields
            and snapshot.status == LessonStatus.CANCELLED
            and current.is_active
        )
        plain = {
            name: getattr(snapshot, name)
            for name in sorted(fields - _TIME_FIELDS)
            if getattr(snapshot, name) != getattr(current, name)
            and not (name == "status" and cancelling)
        }
        if plain:
            self.lesson_repo.update_lesson(current.id, **plain)
            events.append(
                LessonUpdated(mutation_id=mutation.id, lesson_id=current.id, fields=list(plain))
            )

        if cancelling:
            self.lesson_repo.cancel_lesson(current.id)
            events.append(LessonCancelled(mutation_id=mutation.id, lesson_id=current.id))

        return events
