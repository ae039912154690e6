"""Durable mirrors for progression state.

The store treats every backend as best-effort I/O: ``load`` and ``save`` may
raise, and callers at the store boundary log and carry on.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .config import Settings, get_settings
from .db.session import session_scope
from .progression_state import ProgressionState, normalize_user_id
from .repositories.progression_states import progression_states

logger = logging.getLogger(__name__)


class ProgressionBackend(Protocol):
    def load(self, user_id: str) -> Optional[ProgressionState]:  # pragma: no cover - protocol definition
        ...

    def save(self, user_id: str, state: ProgressionState) -> None:  # pragma: no cover - protocol definition
        ...


class DatabaseProgressionBackend:
    """SQLAlchemy-backed mirror, one row per learner."""

    def load(self, user_id: str) -> Optional[ProgressionState]:
        with session_scope(commit=False) as session:
            return progression_states.get(session, user_id)

    def save(self, user_id: str, state: ProgressionState) -> None:
        if normalize_user_id(state.user_id) != normalize_user_id(user_id):
            raise ValueError(f"State for '{state.user_id}' cannot be saved under '{user_id}'.")
        with session_scope() as session:
            progression_states.upsert(session, state)

    def delete(self, user_id: str) -> bool:
        with session_scope() as session:
            return progression_states.delete(session, user_id)


class JsonFileProgressionBackend:
    """JSON-backed legacy persistence used for rollback and offline modes."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path or get_settings().legacy_store_path
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError(f"Legacy progression store {self._path} must contain a JSON object.")
        return raw

    def _write_unlocked(self, payload: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        tmp_path.replace(self._path)

    def load(self, user_id: str) -> Optional[ProgressionState]:
        normalized = normalize_user_id(user_id)
        with self._lock:
            entry = self._load_unlocked().get(normalized)
        if entry is None:
            return None
        return ProgressionState.model_validate(entry)

    def load_all(self) -> Dict[str, ProgressionState]:
        """Every parseable state in the file; malformed entries are logged and skipped."""
        with self._lock:
            raw = self._load_unlocked()
        states: Dict[str, ProgressionState] = {}
        for key, payload in raw.items():
            try:
                states[key] = ProgressionState.model_validate(payload)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to parse legacy progression state %s", key)
        return states

    def save(self, user_id: str, state: ProgressionState) -> None:
        normalized = normalize_user_id(user_id)
        if normalize_user_id(state.user_id) != normalized:
            raise ValueError(f"State for '{state.user_id}' cannot be saved under '{user_id}'.")
        document = state.model_dump(mode="json")
        document["user_id"] = normalized
        with self._lock:
            payload = self._load_unlocked()
            payload[normalized] = document
            self._write_unlocked(payload)

    def delete(self, user_id: str) -> bool:
        normalized = normalize_user_id(user_id)
        with self._lock:
            payload = self._load_unlocked()
            if normalized not in payload:
                return False
            del payload[normalized]
            self._write_unlocked(payload)
            return True


def build_backend(settings: Optional[Settings] = None) -> ProgressionBackend:
    settings = settings or get_settings()
    if settings.persistence_mode == "legacy":
        logger.info("Using legacy JSON progression store at %s", settings.legacy_store_path)
        return JsonFileProgressionBackend(path=settings.legacy_store_path)
    return DatabaseProgressionBackend()


__all__ = [
    "DatabaseProgressionBackend",
    "JsonFileProgressionBackend",
    "ProgressionBackend",
    "build_backend",
]
