"""Achievement rule evaluation and unlock bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .errors import UnknownAchievementId
from .progression_state import (
    MASTERY_SCORE,
    AchievementDefinition,
    AchievementRequirement,
    ProgressionState,
    UnlockedAchievement,
)
from .xp_levels import add_xp, level_from_xp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementContext:
    """Static lookups some requirements need beyond the progression state."""

    phoneme_categories: Mapping[str, str] = field(default_factory=dict)
    world_lessons: Mapping[str, Sequence[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class AchievementUnlock:
    state: ProgressionState
    unlocked: List[AchievementDefinition] = field(default_factory=list)
    xp_awarded: int = 0
    previous_level: int = 1
    new_level: int = 1

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.previous_level


def _mastered(state: ProgressionState, phoneme_id: str) -> bool:
    progress = state.phoneme_progress.get(phoneme_id)
    return progress is not None and progress.attempts > 0 and progress.average_score >= MASTERY_SCORE


def _phonemes_mastered(state: ProgressionState, req: AchievementRequirement, ctx: AchievementContext) -> bool:
    if req.phoneme_category is None:
        mastered = sum(1 for phoneme_id in state.phoneme_progress if _mastered(state, phoneme_id))
        return mastered >= req.target
    members = [pid for pid, category in ctx.phoneme_categories.items() if category == req.phoneme_category]
    if not members:
        return False
    return all(_mastered(state, pid) for pid in members)


def _lessons_in_world(state: ProgressionState, req: AchievementRequirement, ctx: AchievementContext) -> bool:
    lessons = ctx.world_lessons.get(req.world_id or "")
    if not lessons:
        return False
    completed = set(state.completed_lessons)
    return all(lesson_id in completed for lesson_id in lessons)


_RULES: Dict[str, Callable[[ProgressionState, AchievementRequirement, AchievementContext], bool]] = {
    "lessons_completed": lambda s, r, _: len(s.completed_lessons) >= r.target,
    "streak_days": lambda s, r, _: s.longest_streak >= r.target,
    "xp_total": lambda s, r, _: s.xp >= r.target,
    "perfect_scores": lambda s, r, _: sum(1 for rec in s.lesson_records.values() if rec.best_score == 100) >= r.target,
    "phonemes_mastered": _phonemes_mastered,
    "quests_completed": lambda s, r, _: s.quests_completed >= r.target,
    "lessons_in_world": _lessons_in_world,
}


def requirement_met(
    state: ProgressionState,
    requirement: AchievementRequirement,
    context: Optional[AchievementContext] = None,
) -> bool:
    return _RULES[requirement.type](state, requirement, context or AchievementContext())


def evaluate(
    state: ProgressionState,
    catalog: Iterable[AchievementDefinition],
    context: Optional[AchievementContext] = None,
) -> Set[str]:
    """Return ids of achievements whose requirement now holds and are not yet unlocked."""
    ctx = context or AchievementContext()
    already = state.unlocked_ids()
    return {
        definition.achievement_id
        for definition in catalog
        if definition.achievement_id not in already and requirement_met(state, definition.requirement, ctx)
    }


def apply_unlocks(
    state: ProgressionState,
    achievement_ids: Iterable[str],
    catalog: Sequence[AchievementDefinition],
    now: Optional[datetime] = None,
) -> AchievementUnlock:
    """Record unlocks and award each achievement's XP exactly once."""
    by_id = {definition.achievement_id: definition for definition in catalog}
    requested = sorted(set(achievement_ids))
    missing = [achievement_id for achievement_id in requested if achievement_id not in by_id]
    if missing:
        raise UnknownAchievementId(f"Unknown achievement id(s): {', '.join(missing)}.")

    previous_level = level_from_xp(state.xp)
    already = state.unlocked_ids()
    fresh = [by_id[achievement_id] for achievement_id in requested if achievement_id not in already]
    if not fresh:
        return AchievementUnlock(
            state=state.model_copy(deep=True),
            previous_level=previous_level,
            new_level=previous_level,
        )

    stamp = now or datetime.now(timezone.utc)
    updated = state.touched()
    for definition in fresh:
        updated.unlocked_achievements.append(
            UnlockedAchievement(achievement_id=definition.achievement_id, unlocked_at=stamp)
        )
    xp_awarded = 0
    for definition in fresh:
        updated = add_xp(updated, definition.xp_reward).state
        xp_awarded += definition.xp_reward
    logger.debug("Unlocked %s for %s", [d.achievement_id for d in fresh], state.user_id)
    return AchievementUnlock(
        state=updated,
        unlocked=fresh,
        xp_awarded=xp_awarded,
        previous_level=previous_level,
        new_level=level_from_xp(updated.xp),
    )


__all__ = [
    "AchievementContext",
    "AchievementUnlock",
    "apply_unlocks",
    "evaluate",
    "requirement_met",
]
