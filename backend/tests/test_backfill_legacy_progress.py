from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from phonics_engine.config import get_settings
from phonics_engine.db.session import dispose_engine, init_database
from phonics_engine.progression_backends import DatabaseProgressionBackend, JsonFileProgressionBackend
from phonics_engine.progression_state import ProgressionState
from scripts import backfill_legacy_progress as backfill

OLDER = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def database(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("PHONICS_DATABASE_URL", f"sqlite:///{tmp_path / 'progress.db'}")
    get_settings.cache_clear()
    dispose_engine()
    init_database()
    yield
    dispose_engine()
    get_settings.cache_clear()


def _legacy(tmp_path: Path, *states: ProgressionState) -> Path:
    path = tmp_path / "legacy.json"
    store = JsonFileProgressionBackend(path=path)
    for state in states:
        store.save(state.user_id, state)
    return path


def test_backfill_imports_legacy_states(tmp_path: Path, database) -> None:
    path = _legacy(
        tmp_path,
        ProgressionState(user_id="kid-1", xp=120, last_updated=OLDER),
        ProgressionState(user_id="kid-2", xp=40, last_updated=OLDER),
    )
    assert backfill.backfill_progress(path) == 2
    loaded = DatabaseProgressionBackend().load("kid-1")
    assert loaded is not None and loaded.xp == 120


def test_backfill_keeps_newer_database_rows(tmp_path: Path, database) -> None:
    DatabaseProgressionBackend().save(
        "kid-1", ProgressionState(user_id="kid-1", xp=500, last_updated=OLDER + timedelta(days=2))
    )
    path = _legacy(tmp_path, ProgressionState(user_id="kid-1", xp=120, last_updated=OLDER))

    assert backfill.backfill_progress(path) == 0
    assert DatabaseProgressionBackend().load("kid-1").xp == 500

    assert backfill.backfill_progress(path, overwrite=True) == 1
    assert DatabaseProgressionBackend().load("kid-1").xp == 120


def test_backfill_dry_run_writes_nothing(tmp_path: Path, database) -> None:
    path = _legacy(tmp_path, ProgressionState(user_id="kid-1", xp=120, last_updated=OLDER))
    assert backfill.backfill_progress(path, dry_run=True) == 1
    assert DatabaseProgressionBackend().load("kid-1") is None


def test_backfill_missing_file_is_a_noop(tmp_path: Path, database) -> None:
    assert backfill.backfill_progress(tmp_path / "missing.json") == 0


def test_backfill_compares_naive_legacy_timestamps_as_utc(tmp_path: Path, database) -> None:
    DatabaseProgressionBackend().save(
        "kid-1", ProgressionState(user_id="kid-1", xp=500, last_updated=OLDER + timedelta(days=2))
    )
    path = tmp_path / "legacy.json"
    path.write_text(
        json.dumps(
            {
                "kid-1": {"user_id": "kid-1", "xp": 120, "last_updated": "2024-03-01T09:30:00"},
                "kid-2": {"user_id": "kid-2", "xp": 40, "last_updated": "2024-03-01T09:30:00"},
            }
        ),
        encoding="utf-8",
    )

    assert backfill.backfill_progress(path) == 1
    assert DatabaseProgressionBackend().load("kid-1").xp == 500
    imported = DatabaseProgressionBackend().load("kid-2")
    assert imported is not None
    assert imported.last_updated == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
