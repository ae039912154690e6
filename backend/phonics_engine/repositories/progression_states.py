"""Database-backed progression state repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import PersistenceAuditEventModel, ProgressionStateModel
from ..progression_state import ProgressionState, normalize_user_id
from ..xp_levels import level_from_xp


def _aware(value: datetime | None) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProgressionStateRepository:
    """One row per learner; every save replaces the full document."""

    def get(self, session: Session, user_id: str) -> ProgressionState | None:
        model = self._find(session, user_id)
        if model is None:
            return None
        return self._to_domain(model)

    def upsert(self, session: Session, state: ProgressionState) -> ProgressionState:
        normalized = normalize_user_id(state.user_id)
        model = self._find(session, normalized)
        created = model is None
        if model is None:
            model = ProgressionStateModel(user_id=normalized)
            session.add(model)

        self._apply_state(model, state)
        session.flush()
        self._record_audit(
            session,
            model.id,
            "progression_insert" if created else "progression_upsert",
            {"user_id": normalized, "xp": model.xp},
        )
        return self._to_domain(model)

    def delete(self, session: Session, user_id: str) -> bool:
        model = self._find(session, user_id)
        if model is None:
            return False
        self._record_audit(session, None, "progression_delete", {"user_id": model.user_id})
        session.delete(model)
        session.flush()
        return True

    def _find(self, session: Session, user_id: str) -> ProgressionStateModel | None:
        normalized = normalize_user_id(user_id)
        stmt = select(ProgressionStateModel).where(ProgressionStateModel.user_id == normalized)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _apply_state(model: ProgressionStateModel, state: ProgressionState) -> None:
        payload = state.model_dump(mode="json")
        model.xp = state.xp
        model.level = level_from_xp(state.xp)
        model.current_streak = state.current_streak
        model.longest_streak = state.longest_streak
        model.last_activity_date = state.last_activity_date
        model.quests_generated_on = state.quests_generated_on
        model.quests_completed = state.quests_completed
        model.unlocked_achievements = payload["unlocked_achievements"]
        model.completed_lessons = payload["completed_lessons"]
        model.unlocked_worlds = payload["unlocked_worlds"]
        model.phoneme_progress = payload["phoneme_progress"]
        model.daily_quests = payload["daily_quests"]
        model.lesson_records = payload["lesson_records"]
        model.last_updated = state.last_updated

    @staticmethod
    def _to_domain(model: ProgressionStateModel) -> ProgressionState:
        payload: Dict[str, Any] = {
            "user_id": model.user_id,
            "xp": model.xp,
            "current_streak": model.current_streak,
            "longest_streak": model.longest_streak,
            "last_activity_date": model.last_activity_date,
            "quests_generated_on": model.quests_generated_on,
            "quests_completed": model.quests_completed,
            "unlocked_achievements": model.unlocked_achievements or [],
            "completed_lessons": model.completed_lessons or [],
            "unlocked_worlds": model.unlocked_worlds or [],
            "phoneme_progress": model.phoneme_progress or {},
            "daily_quests": model.daily_quests or [],
            "lesson_records": model.lesson_records or {},
            "last_updated": _aware(model.last_updated),
        }
        return ProgressionState.model_validate(payload)

    def _record_audit(self, session: Session, progression_id, event_type: str, payload: Dict[str, Any]) -> None:
        event = PersistenceAuditEventModel(
            progression_id=progression_id,
            event_type=event_type,
            payload=payload,
        )
        session.add(event)


progression_states = ProgressionStateRepository()

__all__ = ["ProgressionStateRepository", "progression_states"]
