from __future__ import annotations

from datetime import date, timedelta

from phonics_engine.progression_state import ProgressionState
from phonics_engine.streaks import effective_streak, streak_is_alive, update_streak

TODAY = date(2024, 3, 4)


def test_first_activity_starts_streak() -> None:
    update = update_streak(ProgressionState(user_id="kid"), TODAY)
    assert update.changed
    assert not update.extended
    assert update.state.current_streak == 1
    assert update.state.longest_streak == 1
    assert update.state.last_activity_date == TODAY


def test_same_day_is_idempotent() -> None:
    once = update_streak(ProgressionState(user_id="kid"), TODAY).state
    twice = update_streak(once, TODAY)
    assert not twice.changed
    assert twice.state == once


def test_consecutive_day_extends_by_one() -> None:
    state = ProgressionState(
        user_id="kid", current_streak=4, longest_streak=4, last_activity_date=TODAY - timedelta(days=1)
    )
    update = update_streak(state, TODAY)
    assert update.extended
    assert update.state.current_streak == 5
    assert update.state.longest_streak == 5


def test_gap_resets_but_keeps_longest() -> None:
    state = ProgressionState(
        user_id="kid", current_streak=6, longest_streak=9, last_activity_date=TODAY - timedelta(days=2)
    )
    update = update_streak(state, TODAY)
    assert update.reset
    assert update.state.current_streak == 1
    assert update.state.longest_streak == 9


def test_future_activity_date_is_treated_as_credited() -> None:
    state = ProgressionState(
        user_id="kid", current_streak=2, longest_streak=2, last_activity_date=TODAY + timedelta(days=1)
    )
    update = update_streak(state, TODAY)
    assert not update.changed
    assert update.state.current_streak == 2


def test_effective_streak_reads_zero_after_lapse() -> None:
    state = ProgressionState(
        user_id="kid", current_streak=3, longest_streak=3, last_activity_date=TODAY - timedelta(days=3)
    )
    assert not streak_is_alive(state, TODAY)
    assert effective_streak(state, TODAY) == 0
    assert state.current_streak == 3
    assert effective_streak(state, TODAY - timedelta(days=2)) == 3
