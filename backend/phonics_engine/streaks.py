"""Daily streak bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from .progression_state import ProgressionState


@dataclass(frozen=True)
class StreakUpdate:
    state: ProgressionState
    changed: bool
    extended: bool = False
    reset: bool = False


def update_streak(state: ProgressionState, today: date) -> StreakUpdate:
    """Credit ``today`` as an active day.

    Safe to call after every activity: a second call on the same day is a no-op.
    """
    last = state.last_activity_date
    # A stored date ahead of ``today`` means clock skew; treat it as already credited.
    if last is not None and last >= today:
        return StreakUpdate(state=state.model_copy(deep=True), changed=False)

    updated = state.touched()
    extended = last is not None and last == today - timedelta(days=1)
    updated.current_streak = state.current_streak + 1 if extended else 1
    updated.longest_streak = max(state.longest_streak, updated.current_streak)
    updated.last_activity_date = today
    return StreakUpdate(
        state=updated,
        changed=True,
        extended=extended,
        reset=not extended and state.current_streak > 0,
    )


def streak_is_alive(state: ProgressionState, today: date) -> bool:
    last = state.last_activity_date
    if last is None:
        return False
    return today - last <= timedelta(days=1)


def effective_streak(state: ProgressionState, today: date) -> int:
    """Streak to display on read; a lapsed streak shows as 0 without mutating state."""
    return state.current_streak if streak_is_alive(state, today) else 0


__all__ = ["StreakUpdate", "effective_streak", "streak_is_alive", "update_streak"]
