"""XP curve and level derivation.

XP needed to reach level ``L`` is ``round(100 * L ** 1.5)`` with level 1 free.
Levels are always derived from XP; nothing stores them independently.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import InvalidAmount
from .progression_state import ProgressionState

LEVEL_TITLES = {
    1: "Phonics Beginner",
    2: "Sound Seeker",
    3: "Letter Explorer",
    4: "Word Builder",
    5: "Blend Master",
    6: "Rule Learner",
    7: "Sentence Starter",
    8: "Story Reader",
    9: "Phonics Champion",
    10: "Reading Master",
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def xp_threshold(level: int) -> int:
    if level < 1:
        raise InvalidAmount(f"Level must be at least 1, got {level}.")
    if level == 1:
        return 0
    return round_half_up(100 * level**1.5)


def level_from_xp(xp: int) -> int:
    if xp < 0:
        raise InvalidAmount(f"XP cannot be negative, got {xp}.")
    # Invert the curve, then correct for rounding at the boundaries.
    level = max(1, int((xp / 100) ** (2 / 3)))
    while level > 1 and xp_threshold(level) > xp:
        level -= 1
    while xp_threshold(level + 1) <= xp:
        level += 1
    return level


def level_progress(xp: int) -> float:
    """Fraction of the way from the current level's threshold to the next, in [0, 1)."""
    level = level_from_xp(xp)
    floor = xp_threshold(level)
    ceiling = xp_threshold(level + 1)
    return (xp - floor) / (ceiling - floor)


def xp_to_next_level(xp: int) -> int:
    return xp_threshold(level_from_xp(xp) + 1) - xp


def level_title(level: int) -> str:
    return LEVEL_TITLES[min(max(level, 1), 10)]


@dataclass(frozen=True)
class XpAward:
    state: ProgressionState
    amount: int
    previous_level: int
    new_level: int

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.previous_level


def add_xp(state: ProgressionState, amount: int) -> XpAward:
    """Return a new state with ``amount`` XP added."""
    if amount < 0:
        raise InvalidAmount(f"XP awards must be non-negative, got {amount}.")
    previous_level = level_from_xp(state.xp)
    if amount == 0:
        return XpAward(state=state.model_copy(deep=True), amount=0, previous_level=previous_level, new_level=previous_level)
    updated = state.touched()
    updated.xp = state.xp + amount
    return XpAward(
        state=updated,
        amount=amount,
        previous_level=previous_level,
        new_level=level_from_xp(updated.xp),
    )


__all__ = [
    "LEVEL_TITLES",
    "XpAward",
    "add_xp",
    "level_from_xp",
    "level_progress",
    "level_title",
    "round_half_up",
    "xp_threshold",
    "xp_to_next_level",
]
