from __future__ import annotations

import os

from fastapi.testclient import TestClient

os.environ.setdefault("PHONICS_DATABASE_URL", "sqlite://")

from phonics_engine.main import app  # noqa: E402
from phonics_engine.db.session import dispose_engine  # noqa: E402


def teardown_module() -> None:  # pragma: no cover - test cleanup
    dispose_engine()


def test_health_endpoint_reports_catalog_versions() -> None:
    client = TestClient(app)
    payload = client.get("/healthz").json()
    assert payload["status"] == "ok"
    assert set(payload["catalogs"]) == {"quests", "achievements", "phonics"}


def test_database_health_endpoint_success() -> None:
    client = TestClient(app)
    response = client.get("/healthz/database")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert "pool" in payload
    assert "persistence_mode" in payload


def test_database_health_endpoint_failure(monkeypatch) -> None:
    client = TestClient(app)

    def raise_runtime_error():
        raise RuntimeError("missing database url")

    monkeypatch.setattr("phonics_engine.main.get_engine", raise_runtime_error)
    response = client.get("/healthz/database")
    assert response.status_code == 503
    assert response.json()["detail"] == "missing database url"


def test_shutdown_closes_progression_registry() -> None:
    class _Registry:
        closed = False

        def close(self) -> None:
            self.closed = True

    registry = _Registry()
    app.state.progression_registry = registry
    try:
        with TestClient(app):
            assert not registry.closed
        assert registry.closed
    finally:
        del app.state.progression_registry
