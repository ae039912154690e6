"""Progression state models shared by the engine, the store and the backends."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

QuestType = Literal[
    "complete_lessons",
    "earn_xp",
    "perfect_score",
    "practice_phonemes",
    "complete_games",
    "maintain_streak",
]
QUEST_TYPES = frozenset(
    {
        "complete_lessons",
        "earn_xp",
        "perfect_score",
        "practice_phonemes",
        "complete_games",
        "maintain_streak",
    }
)

PhonemeCategory = Literal[
    "short_vowel",
    "long_vowel",
    "consonant",
    "digraph",
    "blend",
    "diphthong",
    "r_controlled",
]

RequirementType = Literal[
    "lessons_completed",
    "streak_days",
    "xp_total",
    "perfect_scores",
    "phonemes_mastered",
    "quests_completed",
    "lessons_in_world",
]

WorldUnlockType = Literal["none", "world_complete", "level", "xp"]

# Attempts scoring at or above this count as correct and as mastery.
MASTERY_SCORE = 80


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_user_id(user_id: str) -> str:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


class PhonemeProgress(BaseModel):
    """Running practice statistics for a single phoneme."""

    attempts: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    average_score: int = Field(default=0, ge=0, le=100)
    last_practiced: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_counts(self) -> "PhonemeProgress":
        if self.correct_count > self.attempts:
            raise ValueError("correct_count cannot exceed attempts")
        return self


class QuestTemplate(BaseModel):
    """Catalog entry used to instantiate a daily quest."""

    template_id: str
    type: QuestType
    title: str
    description: str = ""
    target_value: int = Field(gt=0)
    xp_reward: int = Field(gt=0)


class Quest(BaseModel):
    """Daily quest instance with clamped progress."""

    quest_id: str
    type: QuestType
    title: str
    description: str = ""
    target_value: int = Field(gt=0)
    current_value: int = Field(default=0, ge=0)
    xp_reward: int = Field(gt=0)
    completed: bool = False
    expires_at: datetime

    @model_validator(mode="after")
    def _clamp_progress(self) -> "Quest":
        if self.current_value > self.target_value:
            self.current_value = self.target_value
        self.completed = self.current_value >= self.target_value
        return self


class AchievementRequirement(BaseModel):
    type: RequirementType
    target: int = Field(default=1, ge=0)
    phoneme_category: Optional[PhonemeCategory] = None
    world_id: Optional[str] = None


class WorldUnlockRequirement(BaseModel):
    """Condition a learner must meet before entering a world."""

    model_config = ConfigDict(frozen=True)

    type: WorldUnlockType = "none"
    world_id: Optional[str] = None
    value: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_target(self) -> "WorldUnlockRequirement":
        if self.type == "world_complete" and not self.world_id:
            raise ValueError("world_complete requirements need a world_id")
        if self.type in ("level", "xp") and self.value < 1:
            raise ValueError(f"{self.type} requirements need a positive value")
        return self


class AchievementDefinition(BaseModel):
    """Static achievement catalog entry; never mutated at runtime."""

    model_config = ConfigDict(frozen=True)

    achievement_id: str
    name: str
    description: str = ""
    category: Literal["progress", "streak", "performance", "collection", "special"] = "progress"
    rarity: Literal["common", "uncommon", "rare", "epic", "legendary"] = "common"
    xp_reward: int = Field(default=20, ge=0)
    requirement: AchievementRequirement


class UnlockedAchievement(BaseModel):
    achievement_id: str
    unlocked_at: datetime = Field(default_factory=_now)


class LessonRecord(BaseModel):
    """Best-so-far results for a lesson across all completed attempts."""

    lesson_id: str
    attempts: int = Field(default=0, ge=0)
    best_score: int = Field(default=0, ge=0, le=100)
    best_stars: int = Field(default=0, ge=0, le=3)
    total_xp_earned: int = Field(default=0, ge=0)
    total_time_spent_seconds: int = Field(default=0, ge=0)
    last_completed_at: Optional[datetime] = None


class ProgressionState(BaseModel):
    """Authoritative progression snapshot for one learner.

    The level is never stored; derive it with ``xp_levels.level_from_xp``.
    """

    user_id: str
    xp: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_activity_date: Optional[date] = None
    unlocked_achievements: List[UnlockedAchievement] = Field(default_factory=list)
    completed_lessons: List[str] = Field(default_factory=list)
    unlocked_worlds: List[str] = Field(default_factory=list)
    phoneme_progress: Dict[str, PhonemeProgress] = Field(default_factory=dict)
    daily_quests: List[Quest] = Field(default_factory=list)
    quests_generated_on: Optional[date] = None
    quests_completed: int = Field(default=0, ge=0)
    lesson_records: Dict[str, LessonRecord] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=_now)

    @model_validator(mode="before")
    @classmethod
    def _normalize_collections(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        lessons = data.get("completed_lessons")
        if isinstance(lessons, list):
            data["completed_lessons"] = list(dict.fromkeys(lessons))
        worlds = data.get("unlocked_worlds")
        if isinstance(worlds, list):
            data["unlocked_worlds"] = list(dict.fromkeys(worlds))
        unlocked = data.get("unlocked_achievements")
        if isinstance(unlocked, list):
            seen: set[str] = set()
            deduped = []
            for entry in unlocked:
                key = entry.get("achievement_id") if isinstance(entry, dict) else getattr(entry, "achievement_id", None)
                if key in seen:
                    continue
                seen.add(key)
                deduped.append(entry)
            data["unlocked_achievements"] = deduped
        return data

    @field_validator("last_updated")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        # Legacy documents may carry naive timestamps; they were written in UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_streaks(self) -> "ProgressionState":
        if self.longest_streak < self.current_streak:
            self.longest_streak = self.current_streak
        return self

    def unlocked_ids(self) -> set[str]:
        return {entry.achievement_id for entry in self.unlocked_achievements}

    def touched(self) -> "ProgressionState":
        """Return a deep copy stamped with a fresh ``last_updated``."""
        return self.model_copy(deep=True, update={"last_updated": _now()})


__all__ = [
    "AchievementDefinition",
    "AchievementRequirement",
    "LessonRecord",
    "MASTERY_SCORE",
    "PhonemeCategory",
    "PhonemeProgress",
    "ProgressionState",
    "QUEST_TYPES",
    "Quest",
    "QuestTemplate",
    "QuestType",
    "RequirementType",
    "UnlockedAchievement",
    "WorldUnlockRequirement",
    "WorldUnlockType",
    "normalize_user_id",
]
