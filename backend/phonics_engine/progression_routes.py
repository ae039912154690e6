"""Progression, lesson session and pronunciation REST endpoints."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from .catalogs import get_catalogs
from .config import get_settings
from .db.session import init_database
from .errors import PhaseNotReady, WorldLocked
from .lesson_session import PHASES, LessonPhase, LessonResult, LessonSession
from .progression_backends import build_backend
from .progression_state import ProgressionState, Quest
from .progression_store import ProgressionStore, ProgressionStoreRegistry, ProgressionUpdate
from .pronunciation import (
    PronunciationFeedback,
    PronunciationScore,
    TranscriptEvent,
    feedback_for_score,
    is_word_correct,
    score_pronunciation,
)
from .streaks import effective_streak
from .worlds import completed_worlds, is_world_unlocked
from .xp_levels import level_from_xp, level_progress, level_title, xp_to_next_level

router = APIRouter(prefix="/api/progression", tags=["progression"])
pronunciation_router = APIRouter(prefix="/api/pronunciation", tags=["pronunciation"])
logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()


def build_registry() -> ProgressionStoreRegistry:
    settings = get_settings()
    if settings.persistence_mode == "database":
        init_database()
    return ProgressionStoreRegistry(get_catalogs(), build_backend(settings), settings=settings)


def get_registry(request: Request) -> ProgressionStoreRegistry:
    state = request.app.state
    with _registry_lock:
        registry = getattr(state, "progression_registry", None)
        if registry is None:
            registry = build_registry()
            state.progression_registry = registry
    return registry


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except PhaseNotReady as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except WorldLocked as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


def _store(registry: ProgressionStoreRegistry, user_id: str) -> ProgressionStore:
    with _engine_errors():
        return registry.get(user_id)


# Request models ---------------------------------------------------------


class XpRequest(BaseModel):
    amount: int


class ActivityRequest(BaseModel):
    today: Optional[date] = None


class QuestRefreshRequest(BaseModel):
    today: Optional[date] = None


class QuestProgressRequest(BaseModel):
    quest_type: str = Field(..., min_length=1)
    delta: int = 1


class PhonemeAttemptRequest(BaseModel):
    score: int


class ListenRequest(BaseModel):
    item_id: str = Field(..., min_length=1)


class PracticeRequest(BaseModel):
    score: Optional[int] = None
    correct: Optional[bool] = None
    phoneme_id: Optional[str] = None


class TranscriptRequest(BaseModel):
    expected: str
    transcript: str = ""
    is_final: bool = True
    phoneme_id: Optional[str] = None


class PlayRoundRequest(BaseModel):
    correct: bool
    score: Optional[int] = None


class AssessmentAnswerRequest(BaseModel):
    correct: bool


class PronunciationRequest(BaseModel):
    expected: str
    spoken: str = ""
    threshold: float = Field(default=0.75, ge=0.0, le=1.0)


# Response payloads ------------------------------------------------------


class ProgressionPayload(BaseModel):
    user_id: str
    xp: int
    level: int
    level_title: str
    level_progress: float
    xp_to_next_level: int
    current_streak: int
    effective_streak: int
    longest_streak: int
    last_activity_date: Optional[date] = None
    completed_lessons: List[str] = Field(default_factory=list)
    unlocked_worlds: List[str] = Field(default_factory=list)
    unlocked_achievements: List[Dict[str, Any]] = Field(default_factory=list)
    phoneme_progress: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    daily_quests: List[Quest] = Field(default_factory=list)
    quests_generated_on: Optional[date] = None
    quests_completed: int = 0
    lesson_records: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    last_updated: datetime


class UnlockedAchievementPayload(BaseModel):
    achievement_id: str
    name: str
    xp_reward: int


class UnlockedWorldPayload(BaseModel):
    world_id: str
    name: str


class WorldStatusPayload(BaseModel):
    world_id: str
    name: str
    unlocked: bool
    completed: bool
    lesson_ids: List[str] = Field(default_factory=list)


class ProgressionUpdatePayload(BaseModel):
    progression: ProgressionPayload
    previous_level: int
    new_level: int
    leveled_up: bool
    streak_extended: bool = False
    completed_quests: List[Quest] = Field(default_factory=list)
    unlocked_achievements: List[UnlockedAchievementPayload] = Field(default_factory=list)
    unlocked_worlds: List[UnlockedWorldPayload] = Field(default_factory=list)
    lesson_result: Optional[LessonResult] = None
    first_completion: bool = False


class PhaseGatePayload(BaseModel):
    phase: LessonPhase
    progress: int
    required: int
    completed: bool


class LessonSessionPayload(BaseModel):
    lesson_id: str
    world_id: Optional[str] = None
    title: str = ""
    phase: LessonPhase
    hints_used: int
    can_advance: bool
    completed: bool
    listen_items: List[str] = Field(default_factory=list)
    practice_words: List[str] = Field(default_factory=list)
    gates: List[PhaseGatePayload] = Field(default_factory=list)
    result: Optional[LessonResult] = None


class TranscriptPayload(BaseModel):
    session: LessonSessionPayload
    score: Optional[PronunciationScore] = None
    feedback: Optional[PronunciationFeedback] = None


class AdvancePayload(BaseModel):
    session: LessonSessionPayload
    completion: Optional[ProgressionUpdatePayload] = None


class PronunciationPayload(BaseModel):
    score: PronunciationScore
    feedback: PronunciationFeedback
    is_correct: bool


def _progression_payload(state: ProgressionState, today: date) -> ProgressionPayload:
    level = level_from_xp(state.xp)
    dumped = state.model_dump(mode="json")
    return ProgressionPayload(
        user_id=state.user_id,
        xp=state.xp,
        level=level,
        level_title=level_title(level),
        level_progress=level_progress(state.xp),
        xp_to_next_level=xp_to_next_level(state.xp),
        current_streak=state.current_streak,
        effective_streak=effective_streak(state, today),
        longest_streak=state.longest_streak,
        last_activity_date=state.last_activity_date,
        completed_lessons=list(state.completed_lessons),
        unlocked_worlds=list(state.unlocked_worlds),
        unlocked_achievements=dumped["unlocked_achievements"],
        phoneme_progress=dumped["phoneme_progress"],
        daily_quests=list(state.daily_quests),
        quests_generated_on=state.quests_generated_on,
        quests_completed=state.quests_completed,
        lesson_records=dumped["lesson_records"],
        last_updated=state.last_updated,
    )


def _update_payload(store: ProgressionStore, update: ProgressionUpdate) -> ProgressionUpdatePayload:
    return ProgressionUpdatePayload(
        progression=_progression_payload(update.state, store.today()),
        previous_level=update.previous_level,
        new_level=update.new_level,
        leveled_up=update.leveled_up,
        streak_extended=update.streak_extended,
        completed_quests=list(update.completed_quests),
        unlocked_achievements=[
            UnlockedAchievementPayload(
                achievement_id=definition.achievement_id,
                name=definition.name,
                xp_reward=definition.xp_reward,
            )
            for definition in update.unlocked_achievements
        ],
        unlocked_worlds=[
            UnlockedWorldPayload(world_id=world.world_id, name=world.name) for world in update.unlocked_worlds
        ],
        lesson_result=update.lesson_result,
        first_completion=update.first_completion,
    )


def _session_payload(session: LessonSession) -> LessonSessionPayload:
    gates = []
    for phase in PHASES:
        progress, required = session.gate_requirement(phase)
        gates.append(
            PhaseGatePayload(
                phase=phase,
                progress=progress,
                required=required,
                completed=session.phase_completion[phase],
            )
        )
    return LessonSessionPayload(
        lesson_id=session.plan.lesson_id,
        world_id=session.plan.world_id,
        title=session.plan.title,
        phase=session.phase,
        hints_used=session.hints_used,
        can_advance=session.can_advance(),
        completed=session.is_complete,
        listen_items=list(session.plan.listen_items),
        practice_words=list(session.plan.practice_words),
        gates=gates,
        result=session.result,
    )


# Progression ------------------------------------------------------------


@router.get("/{user_id}", response_model=ProgressionPayload, status_code=status.HTTP_200_OK)
def get_progression(user_id: str, registry: ProgressionStoreRegistry = Depends(get_registry)) -> ProgressionPayload:
    store = _store(registry, user_id)
    # Reading on a new day rotates in that day's quests.
    update = store.refresh_quests()
    return _progression_payload(update.state, store.today())


@router.get("/{user_id}/worlds", response_model=List[WorldStatusPayload])
def list_worlds(user_id: str, registry: ProgressionStoreRegistry = Depends(get_registry)) -> List[WorldStatusPayload]:
    store = _store(registry, user_id)
    state = store.snapshot()
    worlds = store.catalogs.phonics.worlds
    completed = completed_worlds(state, worlds)
    return [
        WorldStatusPayload(
            world_id=world.world_id,
            name=world.name,
            unlocked=is_world_unlocked(world, state, worlds),
            completed=world.world_id in completed,
            lesson_ids=[lesson.lesson_id for lesson in world.lessons],
        )
        for world in worlds
    ]


@router.post("/{user_id}/xp", response_model=ProgressionUpdatePayload)
def add_xp(
    user_id: str,
    payload: XpRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> ProgressionUpdatePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        update = store.add_xp(payload.amount)
    return _update_payload(store, update)


@router.post("/{user_id}/activity", response_model=ProgressionUpdatePayload)
def record_activity(
    user_id: str,
    payload: Optional[ActivityRequest] = None,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> ProgressionUpdatePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        update = store.record_activity(payload.today if payload else None)
    return _update_payload(store, update)


@router.post("/{user_id}/quests/refresh", response_model=ProgressionUpdatePayload)
def refresh_quests(
    user_id: str,
    payload: Optional[QuestRefreshRequest] = None,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> ProgressionUpdatePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        update = store.refresh_quests(payload.today if payload else None)
    return _update_payload(store, update)


@router.post("/{user_id}/quests/progress", response_model=ProgressionUpdatePayload)
def record_quest_progress(
    user_id: str,
    payload: QuestProgressRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> ProgressionUpdatePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        update = store.record_quest_progress(payload.quest_type, payload.delta)
    return _update_payload(store, update)


@router.post("/{user_id}/phonemes/{phoneme_id}/attempts", response_model=ProgressionUpdatePayload)
def record_phoneme_attempt(
    user_id: str,
    phoneme_id: str,
    payload: PhonemeAttemptRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> ProgressionUpdatePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        update = store.record_phoneme_attempt(phoneme_id, payload.score)
    return _update_payload(store, update)


@router.post("/{user_id}/achievements/evaluate", response_model=ProgressionUpdatePayload)
def evaluate_achievements(
    user_id: str,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> ProgressionUpdatePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        update = store.evaluate_achievements()
    return _update_payload(store, update)


# Lesson sessions --------------------------------------------------------


def _session_action(
    registry: ProgressionStoreRegistry,
    user_id: str,
    lesson_id: str,
    action: Callable[[LessonSession], Any],
) -> Tuple[LessonSession, Any]:
    store = _store(registry, user_id)
    with _engine_errors():
        return store.session_action(lesson_id, action)


@router.post(
    "/{user_id}/lessons/{lesson_id}/session",
    response_model=LessonSessionPayload,
    status_code=status.HTTP_201_CREATED,
)
def start_lesson(
    user_id: str,
    lesson_id: str,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    store = _store(registry, user_id)
    with _engine_errors():
        session = store.start_lesson(lesson_id)
    logger.info("Started lesson %s for %s", lesson_id, store.user_id)
    return _session_payload(session)


@router.get("/{user_id}/lessons/{lesson_id}/session", response_model=LessonSessionPayload)
def get_lesson_session(
    user_id: str,
    lesson_id: str,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    return _session_action(registry, user_id, lesson_id, _session_payload)[1]


@router.delete("/{user_id}/lessons/{lesson_id}/session", status_code=status.HTTP_204_NO_CONTENT)
def exit_lesson(
    user_id: str,
    lesson_id: str,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> None:
    store = _store(registry, user_id)
    with _engine_errors():
        store.exit_lesson(lesson_id)


@router.post("/{user_id}/lessons/{lesson_id}/session/listen", response_model=LessonSessionPayload)
def record_listen(
    user_id: str,
    lesson_id: str,
    payload: ListenRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    def action(session: LessonSession) -> LessonSessionPayload:
        session.record_listen(payload.item_id)
        return _session_payload(session)

    return _session_action(registry, user_id, lesson_id, action)[1]


@router.post("/{user_id}/lessons/{lesson_id}/session/practice", response_model=LessonSessionPayload)
def record_practice(
    user_id: str,
    lesson_id: str,
    payload: PracticeRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    if payload.score is None and payload.correct is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide either a score or a correct flag.",
        )

    def action(session: LessonSession) -> LessonSessionPayload:
        if payload.score is not None:
            session.record_practice(payload.score, payload.phoneme_id)
        else:
            session.record_practice_choice(bool(payload.correct), payload.phoneme_id)
        return _session_payload(session)

    return _session_action(registry, user_id, lesson_id, action)[1]


@router.post("/{user_id}/lessons/{lesson_id}/session/transcript", response_model=TranscriptPayload)
def submit_transcript(
    user_id: str,
    lesson_id: str,
    payload: TranscriptRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> TranscriptPayload:
    event = TranscriptEvent(transcript=payload.transcript, is_final=payload.is_final)

    def action(session: LessonSession) -> TranscriptPayload:
        score = session.submit_transcript(payload.expected, event, payload.phoneme_id)
        feedback = feedback_for_score(score, payload.expected, payload.transcript) if score else None
        return TranscriptPayload(session=_session_payload(session), score=score, feedback=feedback)

    return _session_action(registry, user_id, lesson_id, action)[1]


@router.post("/{user_id}/lessons/{lesson_id}/session/play", response_model=LessonSessionPayload)
def record_play_round(
    user_id: str,
    lesson_id: str,
    payload: PlayRoundRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    def action(session: LessonSession) -> LessonSessionPayload:
        session.record_play_round(payload.correct, payload.score)
        return _session_payload(session)

    return _session_action(registry, user_id, lesson_id, action)[1]


@router.post("/{user_id}/lessons/{lesson_id}/session/assess", response_model=LessonSessionPayload)
def record_assessment_answer(
    user_id: str,
    lesson_id: str,
    payload: AssessmentAnswerRequest,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    def action(session: LessonSession) -> LessonSessionPayload:
        session.record_assessment_answer(payload.correct)
        return _session_payload(session)

    return _session_action(registry, user_id, lesson_id, action)[1]


@router.post("/{user_id}/lessons/{lesson_id}/session/hint", response_model=LessonSessionPayload)
def use_hint(
    user_id: str,
    lesson_id: str,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> LessonSessionPayload:
    def action(session: LessonSession) -> LessonSessionPayload:
        session.use_hint()
        return _session_payload(session)

    return _session_action(registry, user_id, lesson_id, action)[1]


@router.post("/{user_id}/lessons/{lesson_id}/session/advance", response_model=AdvancePayload)
def advance_lesson(
    user_id: str,
    lesson_id: str,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> AdvancePayload:
    store = _store(registry, user_id)
    with _engine_errors():
        session, update = store.advance_lesson(lesson_id)
    return AdvancePayload(
        session=_session_payload(session),
        completion=_update_payload(store, update) if update is not None else None,
    )


@router.get("/{user_id}/lessons/{lesson_id}/session/review/{phase}", response_model=PhaseGatePayload)
def review_phase(
    user_id: str,
    lesson_id: str,
    phase: LessonPhase,
    registry: ProgressionStoreRegistry = Depends(get_registry),
) -> PhaseGatePayload:
    _, review = _session_action(registry, user_id, lesson_id, lambda session: session.review(phase))
    return PhaseGatePayload.model_validate(review)


# Pronunciation ----------------------------------------------------------


@pronunciation_router.post("/score", response_model=PronunciationPayload)
def score_utterance(payload: PronunciationRequest) -> PronunciationPayload:
    with _engine_errors():
        score = score_pronunciation(payload.expected, payload.spoken)
    return PronunciationPayload(
        score=score,
        feedback=feedback_for_score(score, payload.expected, payload.spoken),
        is_correct=is_word_correct(payload.expected, payload.spoken, payload.threshold),
    )


__all__ = ["build_registry", "get_registry", "pronunciation_router", "router"]
