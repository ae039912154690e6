from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from phonics_engine.daily_quests import (
    QUESTS_PER_DAY,
    is_expired,
    quest_expiry,
    record_progress,
    refresh_if_needed,
    select_templates,
)
from phonics_engine.errors import InvalidAmount, UnknownQuestType
from phonics_engine.progression_state import ProgressionState, QuestTemplate

TODAY = date(2024, 3, 4)


def _template(template_id: str, quest_type: str, target: int = 2, reward: int = 20) -> QuestTemplate:
    return QuestTemplate(
        template_id=template_id,
        type=quest_type,
        title=template_id.replace("-", " ").title(),
        target_value=target,
        xp_reward=reward,
    )


CATALOG = [
    _template("lessons", "complete_lessons"),
    _template("xp", "earn_xp", target=100),
    _template("phonemes", "practice_phonemes", target=10),
    _template("games", "complete_games", target=3),
]


def test_refresh_generates_three_quests_for_the_day() -> None:
    refresh = refresh_if_needed(ProgressionState(user_id="kid"), TODAY, CATALOG)
    quests = refresh.state.daily_quests
    assert refresh.refreshed
    assert len(quests) == QUESTS_PER_DAY
    assert [quest.quest_id for quest in quests] == [
        "quest-2024-03-04-1",
        "quest-2024-03-04-2",
        "quest-2024-03-04-3",
    ]
    assert all(quest.current_value == 0 and not quest.completed for quest in quests)
    assert refresh.state.quests_generated_on == TODAY


def test_refresh_same_day_is_unchanged() -> None:
    first = refresh_if_needed(ProgressionState(user_id="kid"), TODAY, CATALOG).state
    second = refresh_if_needed(first, TODAY, CATALOG)
    assert not second.refreshed
    assert second.state == first


def test_rotation_is_reproducible_and_advances_daily() -> None:
    today = [template.template_id for template in select_templates(CATALOG, TODAY)]
    assert today == [template.template_id for template in select_templates(CATALOG, TODAY)]
    tomorrow = [template.template_id for template in select_templates(CATALOG, TODAY + timedelta(days=1))]
    assert tomorrow[:2] == today[1:]


def test_small_catalog_yields_every_template() -> None:
    assert len(select_templates(CATALOG[:2], TODAY)) == 2
    assert select_templates([], TODAY) == []


def test_quest_expiry_is_end_of_local_day() -> None:
    expiry = quest_expiry(TODAY, "America/New_York")
    assert (expiry.hour, expiry.minute, expiry.second, expiry.microsecond) == (23, 59, 59, 999000)
    assert expiry.utcoffset() == timedelta(hours=-5)
    quest = refresh_if_needed(ProgressionState(user_id="kid"), TODAY, CATALOG).state.daily_quests[0]
    assert not is_expired(quest, datetime(2024, 3, 4, 23, 0, tzinfo=timezone.utc))
    assert is_expired(quest, datetime(2024, 3, 5, 0, 0, tzinfo=timezone.utc))


def test_progress_clamps_and_completes_once() -> None:
    state = ProgressionState(user_id="kid")
    state = refresh_if_needed(state, TODAY, [_template("lessons", "complete_lessons", target=2, reward=30)]).state

    first = record_progress(state, "complete_lessons", 5)
    quest = first.state.daily_quests[0]
    assert quest.current_value == 2
    assert quest.completed
    assert first.xp_awarded == 30
    assert first.state.xp == 30
    assert first.state.quests_completed == 1

    second = record_progress(first.state, "complete_lessons", 1)
    assert second.completed_quests == []
    assert second.state.xp == 30
    assert second.state.quests_completed == 1


def test_progress_on_other_types_is_ignored() -> None:
    state = refresh_if_needed(ProgressionState(user_id="kid"), TODAY, CATALOG[:1]).state
    progress = record_progress(state, "maintain_streak", 1)
    assert progress.completed_quests == []
    assert progress.state.daily_quests[0].current_value == 0


def test_unknown_quest_type_rejected() -> None:
    with pytest.raises(UnknownQuestType):
        record_progress(ProgressionState(user_id="kid"), "dance_party", 1)


def test_negative_delta_rejected() -> None:
    with pytest.raises(InvalidAmount):
        record_progress(ProgressionState(user_id="kid"), "earn_xp", -1)
