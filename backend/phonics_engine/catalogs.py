"""Versioned quest, achievement and phonics catalogs loaded once at startup."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .achievements import AchievementContext
from .config import get_settings
from .lesson_session import DEFAULT_ASSESSMENT_QUESTIONS, DEFAULT_BASE_XP, LessonPlan
from .progression_state import AchievementDefinition, PhonemeCategory, QuestTemplate, WorldUnlockRequirement

logger = logging.getLogger(__name__)

QUEST_CATALOG_FILE = "quest_catalog.json"
ACHIEVEMENT_CATALOG_FILE = "achievement_catalog.json"
PHONICS_CATALOG_FILE = "phonics_catalog.json"


def _ensure_unique(ids: List[str], label: str) -> None:
    seen: set[str] = set()
    duplicates: set[str] = set()
    for key in ids:
        if key in seen:
            duplicates.add(key)
        seen.add(key)
    if duplicates:
        raise ValueError(f"Duplicate {label} ids: {', '.join(sorted(duplicates))}")


class QuestCatalog(BaseModel):
    version: str
    templates: List[QuestTemplate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "QuestCatalog":
        _ensure_unique([template.template_id for template in self.templates], "quest template")
        return self


class AchievementCatalog(BaseModel):
    version: str
    achievements: List[AchievementDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "AchievementCatalog":
        _ensure_unique([entry.achievement_id for entry in self.achievements], "achievement")
        return self


class PhonemeEntry(BaseModel):
    phoneme_id: str
    symbol: str
    category: PhonemeCategory


class CatalogLesson(BaseModel):
    lesson_id: str
    title: str
    phonemes: List[str] = Field(default_factory=list)
    words: List[str] = Field(default_factory=list)
    play_rounds: int = Field(default=5, ge=0)
    xp_reward: Optional[int] = Field(default=None, ge=0)


class World(BaseModel):
    world_id: str
    name: str
    unlock_requirement: WorldUnlockRequirement = Field(default_factory=WorldUnlockRequirement)
    lessons: List[CatalogLesson] = Field(default_factory=list)


class PhonicsCatalog(BaseModel):
    version: str
    phonemes: List[PhonemeEntry] = Field(default_factory=list)
    worlds: List[World] = Field(default_factory=list)

    @model_validator(mode="after")
    def _references(self) -> "PhonicsCatalog":
        _ensure_unique([entry.phoneme_id for entry in self.phonemes], "phoneme")
        _ensure_unique([lesson.lesson_id for world in self.worlds for lesson in world.lessons], "lesson")
        known = {entry.phoneme_id for entry in self.phonemes}
        for world in self.worlds:
            for lesson in world.lessons:
                unknown = [pid for pid in lesson.phonemes if pid not in known]
                if unknown:
                    raise ValueError(f"Lesson {lesson.lesson_id} references unknown phonemes: {unknown}")
        _ensure_unique([world.world_id for world in self.worlds], "world")
        world_ids = {world.world_id for world in self.worlds}
        for world in self.worlds:
            requirement = world.unlock_requirement
            if requirement.type == "world_complete" and requirement.world_id not in world_ids - {world.world_id}:
                raise ValueError(f"World {world.world_id} unlocks after unknown world '{requirement.world_id}'")
        return self


@dataclass(frozen=True)
class Catalogs:
    quests: QuestCatalog
    achievements: AchievementCatalog
    phonics: PhonicsCatalog

    def achievement_context(self) -> AchievementContext:
        return AchievementContext(
            phoneme_categories={entry.phoneme_id: entry.category for entry in self.phonics.phonemes},
            world_lessons={
                world.world_id: [lesson.lesson_id for lesson in world.lessons] for world in self.phonics.worlds
            },
        )

    def find_world(self, world_id: str) -> Optional[World]:
        for world in self.phonics.worlds:
            if world.world_id == world_id:
                return world
        return None

    def find_lesson(self, lesson_id: str) -> Optional[tuple[World, CatalogLesson]]:
        for world in self.phonics.worlds:
            for lesson in world.lessons:
                if lesson.lesson_id == lesson_id:
                    return world, lesson
        return None

    def lesson_plan(
        self,
        lesson_id: str,
        *,
        base_xp: int = DEFAULT_BASE_XP,
        assessment_questions: int = DEFAULT_ASSESSMENT_QUESTIONS,
    ) -> LessonPlan:
        match = self.find_lesson(lesson_id)
        if match is None:
            raise LookupError(f"Lesson '{lesson_id}' is not in the phonics catalog.")
        world, lesson = match
        return LessonPlan(
            lesson_id=lesson.lesson_id,
            world_id=world.world_id,
            title=lesson.title,
            listen_items=[*lesson.phonemes, *lesson.words],
            practice_words=list(lesson.words),
            phoneme_ids=list(lesson.phonemes),
            play_rounds=lesson.play_rounds,
            assessment_questions=assessment_questions,
            base_xp=lesson.xp_reward if lesson.xp_reward is not None else base_xp,
        )

    def versions(self) -> Dict[str, str]:
        return {
            "quests": self.quests.version,
            "achievements": self.achievements.version,
            "phonics": self.phonics.version,
        }


def _read(path: Path) -> object:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def load_catalogs(directory: Path) -> Catalogs:
    catalogs = Catalogs(
        quests=QuestCatalog.model_validate(_read(directory / QUEST_CATALOG_FILE)),
        achievements=AchievementCatalog.model_validate(_read(directory / ACHIEVEMENT_CATALOG_FILE)),
        phonics=PhonicsCatalog.model_validate(_read(directory / PHONICS_CATALOG_FILE)),
    )
    logger.info("Loaded catalogs from %s: %s", directory, catalogs.versions())
    return catalogs


@lru_cache
def get_catalogs() -> Catalogs:
    return load_catalogs(get_settings().catalog_dir)


__all__ = [
    "AchievementCatalog",
    "CatalogLesson",
    "Catalogs",
    "PhonemeEntry",
    "PhonicsCatalog",
    "QuestCatalog",
    "World",
    "get_catalogs",
    "load_catalogs",
]
