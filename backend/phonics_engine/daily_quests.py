"""Daily quest generation and progress tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import List, Optional, Sequence

from zoneinfo import ZoneInfo

from .errors import InvalidAmount, UnknownQuestType
from .progression_state import QUEST_TYPES, ProgressionState, Quest, QuestTemplate
from .xp_levels import add_xp, level_from_xp

logger = logging.getLogger(__name__)

QUESTS_PER_DAY = 3
_END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class QuestRefresh:
    state: ProgressionState
    refreshed: bool


@dataclass(frozen=True)
class QuestProgress:
    state: ProgressionState
    completed_quests: List[Quest] = field(default_factory=list)
    xp_awarded: int = 0
    previous_level: int = 1
    new_level: int = 1

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.previous_level


def select_templates(catalog: Sequence[QuestTemplate], today: date) -> List[QuestTemplate]:
    """Pick today's templates by a rotation seeded from the date ordinal."""
    if not catalog:
        return []
    count = min(QUESTS_PER_DAY, len(catalog))
    start = today.toordinal() % len(catalog)
    return [catalog[(start + offset) % len(catalog)] for offset in range(count)]


def quest_expiry(today: date, tz_name: str = "UTC") -> datetime:
    return datetime.combine(today, _END_OF_DAY, tzinfo=ZoneInfo(tz_name))


def refresh_if_needed(
    state: ProgressionState,
    today: date,
    catalog: Sequence[QuestTemplate],
    tz_name: str = "UTC",
) -> QuestRefresh:
    if state.quests_generated_on == today:
        return QuestRefresh(state=state.model_copy(deep=True), refreshed=False)

    expires_at = quest_expiry(today, tz_name)
    quests = [
        Quest(
            quest_id=f"quest-{today.isoformat()}-{index}",
            type=template.type,
            title=template.title,
            description=template.description,
            target_value=template.target_value,
            current_value=0,
            xp_reward=template.xp_reward,
            completed=False,
            expires_at=expires_at,
        )
        for index, template in enumerate(select_templates(catalog, today), start=1)
    ]
    updated = state.touched()
    updated.daily_quests = quests
    updated.quests_generated_on = today
    logger.debug("Generated %d quests for %s on %s", len(quests), state.user_id, today)
    return QuestRefresh(state=updated, refreshed=True)


def record_progress(state: ProgressionState, quest_type: str, delta: int) -> QuestProgress:
    """Advance every open quest of ``quest_type`` by ``delta``.

    Quests that reach their target complete exactly once and award their XP.
    """
    if quest_type not in QUEST_TYPES:
        raise UnknownQuestType(f"Unknown quest type '{quest_type}'.")
    if delta < 0:
        raise InvalidAmount(f"Quest progress delta must be non-negative, got {delta}.")

    previous_level = level_from_xp(state.xp)
    updated = state.touched()
    completed: List[Quest] = []
    quests: List[Quest] = []
    for quest in updated.daily_quests:
        if quest.type != quest_type or quest.completed or delta == 0:
            quests.append(quest)
            continue
        value = min(quest.current_value + delta, quest.target_value)
        advanced = quest.model_copy(
            update={"current_value": value, "completed": value >= quest.target_value}
        )
        if advanced.completed:
            completed.append(advanced)
        quests.append(advanced)
    updated.daily_quests = quests

    xp_awarded = 0
    for quest in completed:
        updated = add_xp(updated, quest.xp_reward).state
        xp_awarded += quest.xp_reward
    updated.quests_completed = state.quests_completed + len(completed)

    return QuestProgress(
        state=updated,
        completed_quests=completed,
        xp_awarded=xp_awarded,
        previous_level=previous_level,
        new_level=level_from_xp(updated.xp),
    )


def is_expired(quest: Quest, now: Optional[datetime] = None) -> bool:
    moment = now or datetime.now(quest.expires_at.tzinfo)
    return moment > quest.expires_at


__all__ = [
    "QUESTS_PER_DAY",
    "QuestProgress",
    "QuestRefresh",
    "is_expired",
    "quest_expiry",
    "record_progress",
    "refresh_if_needed",
    "select_templates",
]
