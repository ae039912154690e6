"""World unlock rules.

Unlocks are sticky: once a world id is in ``unlocked_worlds`` it stays there
even if the learner's XP is later reset below the requirement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence, Set

from .catalogs import World
from .progression_state import ProgressionState
from .xp_levels import level_from_xp


@dataclass(frozen=True)
class WorldUnlock:
    state: ProgressionState
    unlocked: List[World] = field(default_factory=list)


def completed_worlds(state: ProgressionState, worlds: Sequence[World]) -> Set[str]:
    """Worlds whose every catalog lesson has been completed at least once."""
    done = set(state.completed_lessons)
    return {
        world.world_id
        for world in worlds
        if world.lessons and all(lesson.lesson_id in done for lesson in world.lessons)
    }


def requirement_met(world: World, state: ProgressionState, completed: Set[str]) -> bool:
    requirement = world.unlock_requirement
    if requirement.type == "none":
        return True
    if requirement.type == "world_complete":
        return requirement.world_id in completed
    if requirement.type == "level":
        return level_from_xp(state.xp) >= requirement.value
    return state.xp >= requirement.value


def starting_worlds(worlds: Sequence[World]) -> List[str]:
    return [world.world_id for world in worlds if world.unlock_requirement.type == "none"]


def is_world_unlocked(world: World, state: ProgressionState, worlds: Sequence[World]) -> bool:
    if world.world_id in state.unlocked_worlds:
        return True
    return requirement_met(world, state, completed_worlds(state, worlds))


def apply_world_unlocks(state: ProgressionState, worlds: Sequence[World]) -> WorldUnlock:
    """Add every world whose requirement now holds; returns the newly unlocked ones."""
    completed = completed_worlds(state, worlds)
    newly = [
        world
        for world in worlds
        if world.world_id not in state.unlocked_worlds and requirement_met(world, state, completed)
    ]
    if not newly:
        return WorldUnlock(state=state)
    updated = state.touched()
    updated.unlocked_worlds.extend(world.world_id for world in newly)
    return WorldUnlock(state=updated, unlocked=newly)


__all__ = [
    "WorldUnlock",
    "apply_world_unlocks",
    "completed_worlds",
    "is_world_unlocked",
    "requirement_met",
    "starting_worlds",
]
