"""ORM models backing the durable mirror of learner progression."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON


class ProgressionStateModel(TimestampMixin, Base):
    __tablename__ = "progression_states"
    __table_args__ = (Index("ix_progression_states_user_id", "user_id", unique=True),)

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    xp: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_activity_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    quests_generated_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    quests_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unlocked_achievements: Mapped[list[dict]] = mapped_column(JSONType, default=list, nullable=False)
    completed_lessons: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    unlocked_worlds: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    phoneme_progress: Mapped[dict[str, dict]] = mapped_column(JSONType, default=dict, nullable=False)
    daily_quests: Mapped[list[dict]] = mapped_column(JSONType, default=list, nullable=False)
    lesson_records: Mapped[dict[str, dict]] = mapped_column(JSONType, default=dict, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )


class PersistenceAuditEventModel(Base):
    __tablename__ = "persistence_audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    progression_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("progression_states.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    progression: Mapped[ProgressionStateModel | None] = relationship()


__all__ = [
    "PersistenceAuditEventModel",
    "ProgressionStateModel",
]
