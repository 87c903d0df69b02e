"""End-to-end tests: timeline handlers and the HTTP API."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from lesson_calendar.domain.bus import EventBus
from lesson_calendar.domain.handlers import HandlerRegistry
from lesson_calendar.domain.models import LessonDraft, TimelineEntryType
from lesson_calendar.main import app, lesson_repo, mutation_repo, timeline_repo
from lesson_calendar.repos.memory import (
    LessonRepository,
    MutationRepository,
    TimelineRepository,
)
from lesson_calendar.services.mutations import MutationService


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, 8, hour, minute, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Timeline handlers
# ---------------------------------------------------------------------------


@pytest.fixture
def wired():
    bus = EventBus()
    timeline = TimelineRepository()
    HandlerRegistry(bus=bus, timeline_repo=timeline)
    service = MutationService(LessonRepository(), MutationRepository(), bus)
    return service, timeline


def _draft(start: datetime, end: datetime, teacher_id: str = "T1") -> LessonDraft:
    return LessonDraft(
        title="Math", start_time=start, end_time=end, teacher_id=teacher_id, class_id="C1"
    )


def test_timeline_records_create_move_and_override(wired):
    service, timeline = wired
    first = service.propose_create(_draft(_at(9), _at(10))).lessons[0]
    second = service.propose_create(_draft(_at(11), _at(12))).lessons[0]

    move = service.propose_move(first.id, _at(11, 30))
    service.confirm_override(move.id)

    entries = timeline.list_for_lesson(first.id)
    assert [e.type for e in entries] == [
        TimelineEntryType.CREATED,
        TimelineEntryType.RESCHEDULED,
        TimelineEntryType.CONFLICT_OVERRIDDEN,
    ]
    assert entries[1].payload["from"][0] == _at(9).isoformat()
    assert entries[1].payload["to"][0] == _at(11, 30).isoformat()
    assert entries[2].payload["conflicting_lesson_ids"] == [second.id]
    assert {e.payload["mutation_id"] for e in entries[1:]} == {move.id}


def test_timeline_records_update_and_cancel(wired):
    service, timeline = wired
    lesson = service.propose_create(_draft(_at(9), _at(10))).lessons[0]

    service.propose_move(lesson.id, _at(9))  # same slot, nothing to record
    service.cancel_lesson(lesson.id)

    types = [e.type for e in timeline.list_for_lesson(lesson.id)]
    assert types == [TimelineEntryType.CREATED, TimelineEntryType.CANCELLED]


def test_rejected_mutation_leaves_no_timeline(wired):
    service, timeline = wired
    mutation = service.propose_create(_draft(_at(9), _at(10)))
    clash = service.propose_create(_draft(_at(9), _at(10)))
    service.cancel(clash.id)

    assert timeline.list_for_lesson(clash.lessons[0].id) == []
    assert len(timeline.list_for_lesson(mutation.lessons[0].id)) == 1


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


@pytest.fixture
def client():
    lesson_repo._store.clear()
    mutation_repo._store.clear()
    timeline_repo._entries.clear()
    return TestClient(app)


def _lesson_json(start: str, end: str, teacher_id: str = "T1", room: str | None = "A1") -> dict:
    return {
        "title": "Math",
        "start_time": start,
        "end_time": end,
        "teacher_id": teacher_id,
        "class_id": "C1",
        "room": room,
    }


def test_api_create_and_fetch(client):
    resp = client.post(
        "/lessons",
        json={"lesson": _lesson_json("2024-01-08T09:00:00Z", "2024-01-08T10:00:00Z")},
    )
    assert resp.status_code == 200
    mutation = resp.json()
    assert mutation["state"] == "committed"

    lesson_id = mutation["lessons"][0]["id"]
    fetched = client.get(f"/lessons/{lesson_id}")
    assert fetched.status_code == 200
    assert fetched.json()["room"] == "A1"


def test_api_conflict_flow(client):
    client.post(
        "/lessons",
        json={"lesson": _lesson_json("2024-01-08T09:00:00Z", "2024-01-08T10:00:00Z")},
    )
    resp = client.post(
        "/lessons",
        json={"lesson": _lesson_json("2024-01-08T09:30:00Z", "2024-01-08T10:30:00Z", room="B2")},
    )
    pending = resp.json()
    assert pending["state"] == "awaiting_override"
    assert pending["conflicts"][0]["kind"] == "teacher"

    commit = client.post(f"/mutations/{pending['id']}/commit")
    assert commit.status_code == 409
    assert len(commit.json()["conflicts"]) == 1

    confirm = client.post(f"/mutations/{pending['id']}/confirm")
    assert confirm.status_code == 200
    assert confirm.json()["state"] == "committed"

    again = client.post(f"/mutations/{pending['id']}/confirm")
    assert again.status_code == 400


def test_api_check_conflicts(client):
    client.post(
        "/lessons",
        json={"lesson": _lesson_json("2024-01-08T09:00:00Z", "2024-01-08T10:30:00Z")},
    )
    resp = client.post(
        "/lessons/check-conflicts",
        json={
            "start_time": "2024-01-08T09:30:00Z",
            "end_time": "2024-01-08T10:00:00Z",
            "teacher_id": "T2",
            "room": "A1",
        },
    )
    body = resp.json()
    assert body["has_conflict"] is True
    assert body["conflicts"][0]["kind"] == "room"

    touching = client.post(
        "/lessons/check-conflicts",
        json={
            "start_time": "2024-01-08T10:30:00Z",
            "end_time": "2024-01-08T11:00:00Z",
            "teacher_id": "T1",
            "room": "A1",
        },
    )
    assert touching.json() == {"has_conflict": False, "conflicts": []}


def test_api_invalid_range_and_unknown_ids(client):
    resp = client.post(
        "/lessons",
        json={"lesson": _lesson_json("2024-01-08T10:00:00Z", "2024-01-08T09:00:00Z")},
    )
    assert resp.status_code == 422

    assert client.get("/mutations/nope").status_code == 404
    assert client.get("/lessons/nope").status_code == 404
    assert client.post("/lessons/nope/move", json={"start_time": "2024-01-08T09:00:00Z"}).status_code == 404


def test_api_series_lifecycle(client):
    resp = client.post(
        "/lessons",
        json={
            "lesson": _lesson_json("2024-01-01T09:00:00Z", "2024-01-01T10:30:00Z"),
            "recurrence": {
                "frequency": "weekly",
                "interval": 1,
                "weekdays": ["MO", "WE", "FR"],
                "end": {"count": 6},
            },
        },
    )
    mutation = resp.json()
    assert mutation["state"] == "committed"
    assert len(mutation["lessons"]) == 6
    group_id = mutation["lessons"][0]["recurrence_group_id"]

    series = client.get(f"/series/{group_id}").json()
    assert [l["start_time"][:10] for l in series] == [
        "2024-01-01", "2024-01-03", "2024-01-05",
        "2024-01-08", "2024-01-10", "2024-01-12",
    ]

    renamed = client.patch(f"/series/{group_id}", json={"title": "Algebra"})
    assert renamed.json()["state"] == "committed"
    assert {l["title"] for l in client.get(f"/series/{group_id}").json()} == {"Algebra"}

    client.post(f"/series/{group_id}/cancel")
    stats = client.get("/lessons/stats", params={"today": "2024-01-08"}).json()
    assert stats["total"] == 6
    assert stats["cancelled"] == 6
    assert stats["upcoming_today"] == 0


def test_api_calendar_window(client):
    resp = client.get("/calendar/window", params={"view": "week", "anchor": "2024-01-10"})
    body = resp.json()
    assert datetime.fromisoformat(body["start"]) == datetime(2024, 1, 8, tzinfo=timezone.utc)
    assert datetime.fromisoformat(body["end"]) == datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert body["previous_anchor"] == "2024-01-03"
    assert body["next_anchor"] == "2024-01-17"

    bad = client.get("/calendar/window", params={"anchor": "qwxzzy"})
    assert bad.status_code == 422


def test_api_calendar_lessons_and_timeline(client):
    created = client.post(
        "/lessons",
        json={"lesson": _lesson_json("2024-01-09T09:00:00Z", "2024-01-09T10:00:00Z")},
    ).json()
    lesson_id = created["lessons"][0]["id"]
    client.post(f"/lessons/{lesson_id}/move", json={"start_time": "2024-01-09T13:00:00Z"})

    day = client.get("/calendar/lessons", params={"view": "day", "anchor": "2024-01-09"}).json()
    assert [l["id"] for l in day] == [lesson_id]
    assert day[0]["end_time"].startswith("2024-01-09T14:00:00")

    other_day = client.get("/calendar/lessons", params={"view": "day", "anchor": "2024-01-10"})
    assert other_day.json() == []

    timeline = client.get(f"/lessons/{lesson_id}/timeline").json()
    assert [e["type"] for e in timeline] == ["created", "rescheduled"]

    listed = client.get(
        "/lessons",
        params={"start": "2024-01-09T00:00:00Z", "end": "2024-01-10T00:00:00Z", "status": "scheduled"},
    ).json()
    assert [l["id"] for l in listed] == [lesson_id]
