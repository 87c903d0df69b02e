"""FastAPI application exposing the lesson calendar engine over HTTP."""

from __future__ import annotations

from datetime import date, datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from lesson_calendar.config import load_settings
from lesson_calendar.domain.bus import EventBus
from lesson_calendar.domain.errors import (
    ConcurrencyError,
    ConflictError,
    InvalidRangeError,
    InvalidRecurrenceError,
    InvalidTransitionError,
    NotFoundError,
)
from lesson_calendar.domain.handlers import HandlerRegistry
from lesson_calendar.domain.models import (
    CalendarWindow,
    CalendarWindowResponse,
    ConflictCheckRequest,
    ConflictCheckResponse,
    ConflictQuery,
    CreateLessonRequest,
    Lesson,
    LessonChanges,
    LessonStats,
    LessonStatus,
    MoveLessonRequest,
    Mutation,
    SeriesChanges,
    TimelineEntry,
    TimeRange,
    ViewMode,
)
from lesson_calendar.logger import setup_logger
from lesson_calendar.repos.memory import (
    LessonRepository,
    MutationRepository,
    TimelineRepository,
)
from lesson_calendar.services.calendar import (
    next_window,
    parse_anchor,
    prev_window,
    resolve,
    resolve_window,
)
from lesson_calendar.services.intervals import normalize
from lesson_calendar.services.mutations import MutationService
from lesson_calendar.services.stats import summarize

settings = load_settings()
logger = setup_logger(settings.log_level)

app = FastAPI(title="Lesson Calendar Service")

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
lesson_repo = LessonRepository()
mutation_repo = MutationRepository()
timeline_repo = TimelineRepository()

handler_registry = HandlerRegistry(bus=event_bus, timeline_repo=timeline_repo)
mutations = MutationService(
    lesson_repo=lesson_repo,
    mutation_repo=mutation_repo,
    bus=event_bus,
    settings=settings,
)


# ── Error mapping ─────────────────────────────────────────────────────


def _conflict_payload(exc: ConflictError) -> list[dict]:
    return [c.model_dump(mode="json") for c in exc.conflicts]


@app.exception_handler(InvalidRangeError)
@app.exception_handler(InvalidRecurrenceError)
async def _invalid_input(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "conflicts": _conflict_payload(exc)},
    )


@app.exception_handler(ConcurrencyError)
async def _concurrency(request: Request, exc: ConcurrencyError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "conflicts": _conflict_payload(exc),
            "new_conflicts": [c.model_dump(mode="json") for c in exc.new_conflicts],
        },
    )


def _today() -> date:
    return datetime.now(settings.tzinfo).date()


def _window(view: ViewMode, anchor: str | None, today: date | None) -> CalendarWindow:
    today = today or _today()
    if anchor is None:
        return CalendarWindow(view_mode=view, anchor_date=today)
    try:
        anchor_date = parse_anchor(anchor, today)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return CalendarWindow(view_mode=view, anchor_date=anchor_date)


# ── Calendar ──────────────────────────────────────────────────────────


@app.get("/calendar/window", response_model=CalendarWindowResponse)
def calendar_window(
    view: ViewMode = ViewMode.WEEK,
    anchor: str | None = None,
    today: date | None = None,
) -> CalendarWindowResponse:
    """Resolve a view and anchor into its range plus the neighbouring anchors."""
    window = _window(view, anchor, today)
    time_range = resolve_window(window, settings.week_start, settings.tzinfo)
    return CalendarWindowResponse(
        view_mode=window.view_mode,
        anchor_date=window.anchor_date,
        start=time_range.start,
        end=time_range.end,
        previous_anchor=prev_window(window).anchor_date,
        next_anchor=next_window(window).anchor_date,
    )


@app.get("/calendar/lessons", response_model=list[Lesson])
def calendar_lessons(
    view: ViewMode = ViewMode.WEEK,
    anchor: str | None = None,
    today: date | None = None,
    teacher_id: str | None = None,
    class_id: str | None = None,
) -> list[Lesson]:
    """Return the lessons displayed by a calendar view."""
    window = _window(view, anchor, today)
    time_range = resolve_window(window, settings.week_start, settings.tzinfo)
    return lesson_repo.query_lessons(time_range, class_id=class_id, teacher_id=teacher_id)


# ── Lessons ───────────────────────────────────────────────────────────


@app.get("/lessons", response_model=list[Lesson])
def list_lessons(
    start: datetime,
    end: datetime,
    teacher_id: str | None = None,
    class_id: str | None = None,
    status: LessonStatus | None = None,
) -> list[Lesson]:
    """Return lessons overlapping ``[start, end)``."""
    return lesson_repo.query_lessons(
        normalize(start, end),
        class_id=class_id,
        teacher_id=teacher_id,
        status=status,
    )


@app.get("/lessons/stats", response_model=LessonStats)
def lesson_stats(class_id: str | None = None, today: date | None = None) -> LessonStats:
    """Status counts for all lessons plus the active ones starting today."""
    lessons = lesson_repo.list_all()
    if class_id is not None:
        lessons = [l for l in lessons if l.class_id == class_id]
    today_range = resolve(ViewMode.DAY, today or _today(), tz=settings.tzinfo)
    return summarize(lessons, today_range)


@app.post("/lessons/check-conflicts", response_model=ConflictCheckResponse)
def check_conflicts(payload: ConflictCheckRequest) -> ConflictCheckResponse:
    """Report conflicts for a prospective slot without changing anything."""
    query = ConflictQuery(
        proposed_range=TimeRange(start=payload.start_time, end=payload.end_time),
        teacher_id=payload.teacher_id,
        room=payload.room,
        exclude_lesson_id=payload.exclude_lesson_id,
    )
    conflicts = mutations.check_conflicts(query)
    return ConflictCheckResponse(has_conflict=bool(conflicts), conflicts=conflicts)


@app.post("/lessons", response_model=Mutation)
def create_lesson(payload: CreateLessonRequest) -> Mutation:
    """Propose a lesson, or a recurring series when ``recurrence`` is given."""
    if payload.recurrence is None:
        return mutations.propose_create(payload.lesson)
    return mutations.propose_series_create(payload.lesson, payload.recurrence)


@app.get("/lessons/{lesson_id}", response_model=Lesson)
def get_lesson(lesson_id: str) -> Lesson:
    lesson = lesson_repo.get(lesson_id)
    if lesson is None:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return lesson


@app.patch("/lessons/{lesson_id}", response_model=Mutation)
def update_lesson(lesson_id: str, changes: LessonChanges) -> Mutation:
    """Propose changes to this lesson only, even if it is part of a series."""
    return mutations.mutate_instance(lesson_id, changes)


@app.post("/lessons/{lesson_id}/move", response_model=Mutation)
def move_lesson(lesson_id: str, payload: MoveLessonRequest) -> Mutation:
    """Propose moving a lesson (calendar drag-and-drop)."""
    return mutations.propose_move(lesson_id, payload.start_time, payload.end_time)


@app.post("/lessons/{lesson_id}/cancel", response_model=Mutation)
def cancel_lesson(lesson_id: str) -> Mutation:
    return mutations.cancel_lesson(lesson_id)


@app.get("/lessons/{lesson_id}/timeline", response_model=list[TimelineEntry])
def lesson_timeline(lesson_id: str) -> list[TimelineEntry]:
    if lesson_repo.get(lesson_id) is None:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return timeline_repo.list_for_lesson(lesson_id)


# ── Series ────────────────────────────────────────────────────────────


@app.get("/series/{group_id}", response_model=list[Lesson])
def get_series(group_id: str) -> list[Lesson]:
    lessons = lesson_repo.list_group(group_id)
    if not lessons:
        raise HTTPException(status_code=404, detail="Series not found")
    return lessons


@app.patch("/series/{group_id}", response_model=Mutation)
def update_series(group_id: str, changes: SeriesChanges) -> Mutation:
    """Propose changes to every active lesson of a series."""
    return mutations.mutate_series(group_id, changes)


@app.post("/series/{group_id}/cancel", response_model=Mutation)
def cancel_series(group_id: str) -> Mutation:
    return mutations.cancel_series(group_id)


# ── Mutations ─────────────────────────────────────────────────────────


@app.get("/mutations/{mutation_id}", response_model=Mutation)
def get_mutation(mutation_id: str) -> Mutation:
    return mutations.get(mutation_id)


@app.post("/mutations/{mutation_id}/commit", response_model=Mutation)
def commit_mutation(mutation_id: str) -> Mutation:
    """Commit only if the conflicts have cleared; 409 otherwise."""
    return mutations.commit(mutation_id)


@app.post("/mutations/{mutation_id}/confirm", response_model=Mutation)
def confirm_mutation(mutation_id: str) -> Mutation:
    """Commit despite the conflicts already shown to the caller."""
    return mutations.confirm_override(mutation_id)


@app.post("/mutations/{mutation_id}/cancel", response_model=Mutation)
def cancel_mutation(mutation_id: str) -> Mutation:
    return mutations.cancel(mutation_id)
