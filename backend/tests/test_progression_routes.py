from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("PHONICS_DATABASE_URL", "sqlite://")

from phonics_engine.catalogs import get_catalogs  # noqa: E402
from phonics_engine.config import Settings  # noqa: E402
from phonics_engine.main import app  # noqa: E402
from phonics_engine.progression_routes import get_registry  # noqa: E402
from phonics_engine.progression_store import ProgressionStoreRegistry  # noqa: E402

NOW = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
LESSON = "/api/progression/kid-1/lessons/letters-land-1/session"


@pytest.fixture
def client():
    registry = ProgressionStoreRegistry(get_catalogs(), None, settings=Settings(), clock=lambda: NOW)
    app.dependency_overrides[get_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()
    registry.close()


def test_snapshot_reports_derived_level(client: TestClient) -> None:
    response = client.post("/api/progression/kid-1/xp", json={"amount": 300})
    assert response.status_code == 200
    body = response.json()
    assert body["leveled_up"] is True
    assert body["new_level"] == 2

    snapshot = client.get("/api/progression/kid-1").json()
    assert snapshot["level"] == 2
    assert snapshot["level_title"] == "Sound Seeker"
    assert snapshot["xp_to_next_level"] == 520 - snapshot["xp"]
    assert len(snapshot["daily_quests"]) == 3


def test_engine_errors_map_to_http_status(client: TestClient) -> None:
    assert client.post("/api/progression/kid-1/xp", json={"amount": -5}).status_code == 422
    missing_type = client.post("/api/progression/kid-1/quests/progress", json={"quest_type": "dance_party"})
    assert missing_type.status_code == 404
    assert client.post("/api/progression/kid-1/phonemes/short-a/attempts", json={"score": 101}).status_code == 422
    assert client.post("/api/progression/kid-1/lessons/moon-base-1/session").status_code == 404
    assert client.post(f"{LESSON}/hint").status_code == 404


def test_activity_and_phoneme_attempts(client: TestClient) -> None:
    first = client.post("/api/progression/kid-1/activity", json={"today": "2024-03-03"}).json()
    assert first["progression"]["current_streak"] == 1
    second = client.post("/api/progression/kid-1/activity").json()
    assert second["streak_extended"] is True
    assert second["progression"]["current_streak"] == 2

    attempt = client.post("/api/progression/kid-1/phonemes/short-a/attempts", json={"score": 90}).json()
    assert attempt["progression"]["phoneme_progress"]["short-a"]["attempts"] == 1


def test_lesson_session_flow_completes_and_applies(client: TestClient) -> None:
    started = client.post(LESSON)
    assert started.status_code == 201
    assert started.json()["phase"] == "listen"

    assert client.post(f"{LESSON}/advance").status_code == 409
    for item in ("short-a", "cat", "hat"):
        client.post(f"{LESSON}/listen", json={"item_id": item})
    assert client.post(f"{LESSON}/advance").json()["session"]["phase"] == "practice"

    interim = client.post(f"{LESSON}/transcript", json={"expected": "cat", "transcript": "ca", "is_final": False})
    assert interim.json()["score"] is None
    spoken = client.post(
        f"{LESSON}/transcript",
        json={"expected": "cat", "transcript": "cat", "is_final": True, "phoneme_id": "short-a"},
    ).json()
    assert spoken["score"]["overall"] == 100
    assert spoken["feedback"]["confidence_level"] == "excellent"
    for score in (80, 90):
        client.post(f"{LESSON}/practice", json={"score": score, "phoneme_id": "short-a"})
    client.post(f"{LESSON}/advance")

    assert client.get(f"{LESSON}/review/listen").json()["completed"] is True
    assert client.get(f"{LESSON}/review/assess").status_code == 409

    for correct in (True, True, True, True, False):
        client.post(f"{LESSON}/play", json={"correct": correct})
    client.post(f"{LESSON}/advance")
    for _ in range(5):
        client.post(f"{LESSON}/assess", json={"correct": True})
    finished = client.post(f"{LESSON}/advance")

    assert finished.status_code == 200
    completion = finished.json()["completion"]
    assert completion["lesson_result"]["total_score"] == 91
    assert completion["lesson_result"]["xp_earned"] == 80
    assert completion["first_completion"] is True
    assert completion["progression"]["completed_lessons"] == ["letters-land-1"]
    unlocked = {entry["achievement_id"] for entry in completion["unlocked_achievements"]}
    assert "first-lesson" in unlocked
    assert client.get(LESSON).status_code == 404


def test_exit_discards_session_without_progress(client: TestClient) -> None:
    client.post(LESSON)
    client.post(f"{LESSON}/listen", json={"item_id": "cat"})
    assert client.delete(LESSON).status_code == 204
    snapshot = client.get("/api/progression/kid-1").json()
    assert snapshot["completed_lessons"] == []
    assert snapshot["xp"] == 0


def test_pronunciation_scoring_endpoint(client: TestClient) -> None:
    response = client.post("/api/pronunciation/score", json={"expected": "Cat!", "spoken": "cat"})
    assert response.status_code == 200
    body = response.json()
    assert body["score"] == {"overall": 100, "accuracy": 100, "completeness": 100, "similarity": 100}
    assert body["is_correct"] is True
    assert client.post("/api/pronunciation/score", json={"expected": "", "spoken": "cat"}).status_code == 422


def test_snapshot_rotates_quests_on_a_new_day() -> None:
    clock = [NOW]
    registry = ProgressionStoreRegistry(get_catalogs(), None, settings=Settings(), clock=lambda: clock[0])
    app.dependency_overrides[get_registry] = lambda: registry
    try:
        client = TestClient(app)
        client.post("/api/progression/kid-1/xp", json={"amount": 10})
        assert client.get("/api/progression/kid-1").json()["quests_generated_on"] == "2024-03-04"

        clock[0] = NOW + timedelta(days=2)
        snapshot = client.get("/api/progression/kid-1").json()

        assert snapshot["quests_generated_on"] == "2024-03-06"
        assert len(snapshot["daily_quests"]) == 3
        assert all(quest["expires_at"].startswith("2024-03-06") for quest in snapshot["daily_quests"])
        assert all(quest["current_value"] == 0 for quest in snapshot["daily_quests"])
    finally:
        app.dependency_overrides.clear()
        registry.close()


def test_locked_world_lessons_are_forbidden(client: TestClient) -> None:
    response = client.post("/api/progression/kid-1/lessons/word-city-1/session")
    assert response.status_code == 403

    worlds = {entry["world_id"]: entry for entry in client.get("/api/progression/kid-1/worlds").json()}
    assert worlds["letters-land"]["unlocked"] is True
    assert worlds["letters-land"]["completed"] is False
    assert "letters-land-1" in worlds["letters-land"]["lesson_ids"]
    assert worlds["word-city"]["unlocked"] is False
    assert client.get("/api/progression/kid-1").json()["unlocked_worlds"] == ["letters-land"]
