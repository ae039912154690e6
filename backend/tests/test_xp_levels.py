from __future__ import annotations

import pytest

from phonics_engine.errors import InvalidAmount
from phonics_engine.progression_state import ProgressionState
from phonics_engine.xp_levels import (
    add_xp,
    level_from_xp,
    level_progress,
    level_title,
    round_half_up,
    xp_threshold,
    xp_to_next_level,
)


def test_thresholds_follow_curve() -> None:
    assert xp_threshold(1) == 0
    assert xp_threshold(2) == 283
    assert xp_threshold(3) == 520
    assert xp_threshold(4) == 800
    assert xp_threshold(10) == 3162


@pytest.mark.parametrize(
    "xp,expected",
    [(0, 1), (282, 1), (283, 2), (519, 2), (520, 3), (799, 3), (800, 4), (3162, 10), (10_000, 21)],
)
def test_level_from_xp_boundaries(xp: int, expected: int) -> None:
    assert level_from_xp(xp) == expected


def test_level_brackets_hold_across_range() -> None:
    for xp in range(0, 6000, 7):
        level = level_from_xp(xp)
        assert level >= 1
        assert xp_threshold(level) <= xp < xp_threshold(level + 1)


def test_level_from_negative_xp_rejected() -> None:
    with pytest.raises(InvalidAmount):
        level_from_xp(-1)


def test_level_progress_and_remaining() -> None:
    assert level_progress(0) == 0
    assert 0 <= level_progress(282) < 1
    assert level_progress(283) == 0
    assert xp_to_next_level(0) == 283
    assert xp_to_next_level(300) == 220


def test_level_title_clamps() -> None:
    assert level_title(1) == "Phonics Beginner"
    assert level_title(10) == "Reading Master"
    assert level_title(42) == "Reading Master"


def test_round_half_up() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(90.5) == 91
    assert round_half_up(0.49) == 0


def test_add_xp_returns_new_state_and_levels() -> None:
    state = ProgressionState(user_id="kid", xp=250)
    award = add_xp(state, 40)
    assert award.state.xp == 290
    assert state.xp == 250
    assert award.previous_level == 1
    assert award.new_level == 2
    assert award.leveled_up


def test_add_zero_xp_is_a_noop() -> None:
    state = ProgressionState(user_id="kid", xp=12)
    award = add_xp(state, 0)
    assert award.state == state
    assert award.state is not state
    assert not award.leveled_up


def test_add_negative_xp_rejected() -> None:
    with pytest.raises(InvalidAmount):
        add_xp(ProgressionState(user_id="kid"), -5)
