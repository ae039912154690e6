"""Authoritative in-memory owner of a learner's progression state.

Each mutation runs under the store lock, composes the pure engine functions
and either commits a new snapshot or raises with the previous snapshot intact.
Committed snapshots are mirrored to the backend on a single background worker;
a failed save is retried on the next mutation and never rolls back local state.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from zoneinfo import ZoneInfo

from .achievements import AchievementUnlock, apply_unlocks, evaluate
from .catalogs import Catalogs, World
from .config import Settings, get_settings
from .daily_quests import record_progress, refresh_if_needed
from .errors import InvalidInput, PhaseNotReady, WorldLocked
from .lesson_session import LessonResult, LessonSession
from .progression_backends import ProgressionBackend
from .progression_state import (
    MASTERY_SCORE,
    AchievementDefinition,
    LessonRecord,
    PhonemeProgress,
    ProgressionState,
    Quest,
    normalize_user_id,
)
from .streaks import update_streak
from .telemetry import emit_event
from .worlds import apply_world_unlocks, is_world_unlocked, starting_worlds
from .xp_levels import add_xp, level_from_xp, round_half_up

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]
Clock = Callable[[], datetime]
T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProgressionUpdate:
    """Committed snapshot plus the celebratory facts the mutation produced."""

    state: ProgressionState
    previous_level: int
    new_level: int
    completed_quests: List[Quest] = field(default_factory=list)
    unlocked_achievements: List[AchievementDefinition] = field(default_factory=list)
    unlocked_worlds: List[World] = field(default_factory=list)
    streak_extended: bool = False
    lesson_result: Optional[LessonResult] = None
    first_completion: bool = False

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.previous_level


@dataclass
class _Changes:
    completed_quests: List[Quest] = field(default_factory=list)
    unlocked: List[AchievementDefinition] = field(default_factory=list)
    worlds: List[World] = field(default_factory=list)
    streak_extended: bool = False


def apply_phoneme_attempt(
    state: ProgressionState,
    phoneme_id: str,
    score: int,
    practiced_at: datetime,
) -> ProgressionState:
    """Fold one scored attempt into the phoneme's running statistics."""
    if not phoneme_id or not phoneme_id.strip():
        raise InvalidInput("Phoneme id cannot be empty.")
    if not 0 <= score <= 100:
        raise InvalidInput(f"Phoneme scores must be within 0..100, got {score}.")
    updated = state.touched()
    current = updated.phoneme_progress.get(phoneme_id) or PhonemeProgress()
    attempts = current.attempts + 1
    updated.phoneme_progress[phoneme_id] = PhonemeProgress(
        attempts=attempts,
        correct_count=current.correct_count + (1 if score >= MASTERY_SCORE else 0),
        average_score=round_half_up((current.average_score * current.attempts + score) / attempts),
        last_practiced=practiced_at,
    )
    return updated


def apply_lesson_record(state: ProgressionState, result: LessonResult) -> Tuple[ProgressionState, bool]:
    """Mark the lesson completed and fold the result into its best-so-far record."""
    updated = state.touched()
    first_completion = result.lesson_id not in updated.completed_lessons
    if first_completion:
        updated.completed_lessons.append(result.lesson_id)
    record = updated.lesson_records.get(result.lesson_id) or LessonRecord(lesson_id=result.lesson_id)
    updated.lesson_records[result.lesson_id] = record.model_copy(
        update={
            "attempts": record.attempts + 1,
            "best_score": max(record.best_score, result.total_score),
            "best_stars": max(record.best_stars, result.stars),
            "total_xp_earned": record.total_xp_earned + result.xp_earned,
            "total_time_spent_seconds": record.total_time_spent_seconds + result.time_spent_seconds,
            "last_completed_at": result.completed_at,
        }
    )
    return updated, first_completion


class ProgressionStore:
    """Serializes every mutation of one learner's progression."""

    def __init__(
        self,
        state: ProgressionState,
        *,
        catalogs: Catalogs,
        backend: Optional[ProgressionBackend] = None,
        settings: Optional[Settings] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._catalogs = catalogs
        self._state = self._with_starting_worlds(state.model_copy(deep=True))
        self._context = catalogs.achievement_context()
        self._backend = backend
        self._settings = settings or get_settings()
        self._tz = ZoneInfo(self._settings.timezone)
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._active_session: Optional[LessonSession] = None
        self._owns_executor = executor is None and backend is not None
        self._executor = executor
        if self._owns_executor:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="progression-mirror")
        self._mirror_future: Optional[Future] = None
        self._mirror_pending = False

    @classmethod
    def load(
        cls,
        user_id: str,
        backend: Optional[ProgressionBackend],
        *,
        catalogs: Catalogs,
        settings: Optional[Settings] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Optional[Clock] = None,
    ) -> "ProgressionStore":
        """Build a store from the backend's copy, or a fresh state when none is usable."""
        normalized = normalize_user_id(user_id)
        state: Optional[ProgressionState] = None
        if backend is not None:
            try:
                state = backend.load(normalized)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to load progression for %s; starting fresh: %s", normalized, exc)
        if state is None:
            state = ProgressionState(user_id=normalized)
        return cls(
            state,
            catalogs=catalogs,
            backend=backend,
            settings=settings,
            executor=executor,
            clock=clock,
        )

    # Reads ----------------------------------------------------------------

    @property
    def user_id(self) -> str:
        return self._state.user_id

    @property
    def catalogs(self) -> Catalogs:
        return self._catalogs

    @property
    def mirror_pending(self) -> bool:
        return self._mirror_pending

    def snapshot(self) -> ProgressionState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    # Listeners ------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def _notify(self, name: str, /, **fields: Any) -> None:
        payload = {"user_id": self._state.user_id, **fields}
        emit_event(name, **payload)
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception:  # noqa: BLE001
                logger.exception("Progression listener failed for %s", name)

    # Mutations ------------------------------------------------------------

    def add_xp(self, amount: int) -> ProgressionUpdate:
        with self._lock:
            before = self._state
            changes = _Changes()
            state = self._ensure_quests(before)
            state = self._award_xp(state, amount, changes)
            state = self._settle(state, changes)
            return self._commit(before, state, changes)

    def record_activity(self, today: Optional[date] = None) -> ProgressionUpdate:
        """Credit today's streak; repeated calls on the same day change nothing."""
        with self._lock:
            before = self._state
            changes = _Changes()
            state = self._ensure_quests(before, today)
            state = self._credit_streak(state, today or self.today(), changes)
            state = self._settle(state, changes)
            return self._commit(before, state, changes)

    def refresh_quests(self, today: Optional[date] = None) -> ProgressionUpdate:
        with self._lock:
            before = self._state
            state = self._ensure_quests(before, today)
            return self._commit(before, state, _Changes())

    def record_quest_progress(self, quest_type: str, delta: int) -> ProgressionUpdate:
        with self._lock:
            before = self._state
            changes = _Changes()
            state = self._ensure_quests(before)
            state = self._progress_quests(state, quest_type, delta, changes)
            state = self._settle(state, changes)
            return self._commit(before, state, changes)

    def record_phoneme_attempt(self, phoneme_id: str, score: int) -> ProgressionUpdate:
        with self._lock:
            before = self._state
            changes = _Changes()
            state = self._ensure_quests(before)
            state = apply_phoneme_attempt(state, phoneme_id, score, self._clock())
            state = self._progress_quests(state, "practice_phonemes", 1, changes)
            state = self._settle(state, changes)
            return self._commit(before, state, changes)

    def evaluate_achievements(self) -> ProgressionUpdate:
        with self._lock:
            before = self._state
            changes = _Changes()
            state = self._settle(before, changes)
            return self._commit(before, state, changes)

    def reset(self) -> ProgressionUpdate:
        with self._lock:
            before = self._state
            if self._active_session is not None:
                self._active_session.exit()
                self._active_session = None
            fresh = self._with_starting_worlds(ProgressionState(user_id=before.user_id))
            update = self._commit(before, fresh, _Changes())
            self._notify("progression_reset")
            return update

    # Lessons --------------------------------------------------------------

    def start_lesson(self, lesson_id: str) -> LessonSession:
        """Open a session for ``lesson_id``; any unfinished session is discarded."""
        plan = self._catalogs.lesson_plan(
            lesson_id,
            base_xp=self._settings.base_lesson_xp,
            assessment_questions=self._settings.assessment_questions,
        )
        with self._lock:
            world = self._catalogs.find_world(plan.world_id) if plan.world_id else None
            if world is not None and not is_world_unlocked(world, self._state, self._catalogs.phonics.worlds):
                raise WorldLocked(f"World '{world.world_id}' is still locked.")
            if self._active_session is not None and not self._active_session.is_complete:
                logger.info(
                    "Discarding unfinished lesson %s for %s",
                    self._active_session.plan.lesson_id,
                    self._state.user_id,
                )
                self._active_session.exit()
            session = LessonSession(plan, started_at=self._clock())
            self._active_session = session
            return session

    def active_session(self, lesson_id: str) -> LessonSession:
        with self._lock:
            session = self._active_session
            if session is None or session.plan.lesson_id != lesson_id:
                raise LookupError(f"No active session for lesson '{lesson_id}'.")
            return session

    def exit_lesson(self, lesson_id: str) -> None:
        with self._lock:
            session = self.active_session(lesson_id)
            session.exit()
            self._active_session = None

    def session_action(self, lesson_id: str, action: Callable[[LessonSession], T]) -> Tuple[LessonSession, T]:
        """Run ``action`` on the active session while holding the store lock.

        Session reads and writes from request handlers go through here or
        ``advance_lesson``; a phase gate is checked and passed atomically.
        """
        with self._lock:
            session = self.active_session(lesson_id)
            return session, action(session)

    def advance_lesson(self, lesson_id: str) -> Tuple[LessonSession, Optional[ProgressionUpdate]]:
        """Advance the active session and apply its result when the lesson finishes."""
        with self._lock:
            session = self.active_session(lesson_id)
            result = session.advance(now=self._clock())
            if result is None:
                return session, None
            return session, self.complete_lesson(session)

    def complete_lesson(self, session: LessonSession) -> ProgressionUpdate:
        """Apply a graded session in order: record, streak, quests, XP, achievements."""
        with self._lock:
            if session.result is None:
                raise PhaseNotReady("Lesson session has not finished the assess phase.")
            if session.recorded:
                raise PhaseNotReady("Lesson result has already been recorded.")
            result = session.result
            before = self._state
            changes = _Changes()

            state = self._ensure_quests(before)
            state, first_completion = apply_lesson_record(state, result)
            for attempt in result.phoneme_attempts:
                state = apply_phoneme_attempt(state, attempt.phoneme_id, attempt.score, result.completed_at)
            state = self._credit_streak(state, result.completed_at.astimezone(self._tz).date(), changes)
            state = self._progress_quests(state, "complete_lessons", 1, changes)
            if result.is_perfect:
                state = self._progress_quests(state, "perfect_score", 1, changes)
            if session.plan.play_rounds > 0:
                state = self._progress_quests(state, "complete_games", 1, changes)
            if result.phoneme_attempts:
                state = self._progress_quests(state, "practice_phonemes", len(result.phoneme_attempts), changes)
            state = self._award_xp(state, result.xp_earned, changes)
            state = self._settle(state, changes)

            update = self._commit(
                before,
                state,
                changes,
                lesson_result=result,
                first_completion=first_completion,
            )
            session.recorded = True
            if self._active_session is session:
                self._active_session = None
            self._notify(
                "lesson_completed",
                lesson_id=result.lesson_id,
                total_score=result.total_score,
                stars=result.stars,
                xp_earned=result.xp_earned,
                first_completion=first_completion,
            )
            return update

    # Composition helpers --------------------------------------------------

    def _ensure_quests(self, state: ProgressionState, today: Optional[date] = None) -> ProgressionState:
        return refresh_if_needed(
            state,
            today or self.today(),
            self._catalogs.quests.templates,
            self._settings.timezone,
        ).state

    def _credit_streak(self, state: ProgressionState, today: date, changes: _Changes) -> ProgressionState:
        streak = update_streak(state, today)
        if not streak.changed:
            return streak.state
        changes.streak_extended = changes.streak_extended or streak.extended
        return self._progress_quests(streak.state, "maintain_streak", 1, changes)

    def _progress_quests(
        self,
        state: ProgressionState,
        quest_type: str,
        delta: int,
        changes: _Changes,
    ) -> ProgressionState:
        progress = record_progress(state, quest_type, delta)
        changes.completed_quests.extend(progress.completed_quests)
        return progress.state

    def _award_xp(self, state: ProgressionState, amount: int, changes: _Changes) -> ProgressionState:
        award = add_xp(state, amount)
        if award.amount == 0:
            return award.state
        return self._progress_quests(award.state, "earn_xp", award.amount, changes)

    def _with_starting_worlds(self, state: ProgressionState) -> ProgressionState:
        missing = [
            world_id
            for world_id in starting_worlds(self._catalogs.phonics.worlds)
            if world_id not in state.unlocked_worlds
        ]
        state.unlocked_worlds.extend(missing)
        return state

    def _settle(self, state: ProgressionState, changes: _Changes) -> ProgressionState:
        state = self._settle_achievements(state, changes)
        unlock = apply_world_unlocks(state, self._catalogs.phonics.worlds)
        changes.worlds.extend(unlock.unlocked)
        return unlock.state

    def _settle_achievements(self, state: ProgressionState, changes: _Changes) -> ProgressionState:
        catalog: Sequence[AchievementDefinition] = self._catalogs.achievements.achievements
        now = self._clock()
        # Unlock XP can satisfy further xp_total requirements; each pass unlocks at least one.
        for _ in range(len(catalog) + 1):
            candidates = evaluate(state, catalog, self._context)
            if not candidates:
                break
            outcome: AchievementUnlock = apply_unlocks(state, candidates, catalog, now)
            changes.unlocked.extend(outcome.unlocked)
            state = outcome.state
        return state

    def _commit(
        self,
        before: ProgressionState,
        state: ProgressionState,
        changes: _Changes,
        *,
        lesson_result: Optional[LessonResult] = None,
        first_completion: bool = False,
    ) -> ProgressionUpdate:
        changed = state != before
        self._state = state
        if changed or self._mirror_pending:
            self._schedule_mirror()

        previous_level = level_from_xp(before.xp)
        new_level = level_from_xp(state.xp)
        for quest in changes.completed_quests:
            self._notify(
                "quest_completed",
                quest_id=quest.quest_id,
                quest_type=quest.type,
                xp_reward=quest.xp_reward,
            )
        for definition in changes.unlocked:
            self._notify(
                "achievement_unlocked",
                achievement_id=definition.achievement_id,
                name=definition.name,
                xp_reward=definition.xp_reward,
            )
        for world in changes.worlds:
            self._notify("world_unlocked", world_id=world.world_id, name=world.name)
        if changes.streak_extended:
            self._notify("streak_extended", current_streak=state.current_streak)
        if new_level > previous_level:
            self._notify("leveled_up", previous_level=previous_level, new_level=new_level)

        return ProgressionUpdate(
            state=state.model_copy(deep=True),
            previous_level=previous_level,
            new_level=new_level,
            completed_quests=list(changes.completed_quests),
            unlocked_achievements=list(changes.unlocked),
            unlocked_worlds=list(changes.worlds),
            streak_extended=changes.streak_extended,
            lesson_result=lesson_result,
            first_completion=first_completion,
        )

    # Write-behind mirror --------------------------------------------------

    def _schedule_mirror(self) -> None:
        if self._backend is None or self._executor is None:
            return
        payload = self._state.model_copy(deep=True)
        self._mirror_future = self._executor.submit(self._mirror, payload)

    def _mirror(self, state: ProgressionState) -> bool:
        assert self._backend is not None
        try:
            self._backend.save(state.user_id, state)
        except Exception:  # noqa: BLE001
            self._mirror_pending = True
            logger.exception("Failed to mirror progression for %s; will retry on next mutation", state.user_id)
            return False
        self._mirror_pending = False
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for the latest scheduled save; returns False on timeout."""
        future = self._mirror_future
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def close(self, timeout: Optional[float] = None) -> None:
        self.flush(timeout)
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


class ProgressionStoreRegistry:
    """Hands out one store per learner, all sharing a single mirror worker."""

    def __init__(
        self,
        catalogs: Catalogs,
        backend: Optional[ProgressionBackend] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._catalogs = catalogs
        self._backend = backend
        self._settings = settings or get_settings()
        self._clock = clock
        self._lock = threading.Lock()
        self._stores: Dict[str, ProgressionStore] = {}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="progression-mirror")

    @property
    def catalogs(self) -> Catalogs:
        return self._catalogs

    def get(self, user_id: str) -> ProgressionStore:
        normalized = normalize_user_id(user_id)
        with self._lock:
            store = self._stores.get(normalized)
            if store is None:
                store = ProgressionStore.load(
                    normalized,
                    self._backend,
                    catalogs=self._catalogs,
                    settings=self._settings,
                    executor=self._executor,
                    clock=self._clock,
                )
                self._stores[normalized] = store
            return store

    def flush(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            stores = list(self._stores.values())
        return all(store.flush(timeout) for store in stores)

    def close(self) -> None:
        self.flush(self._settings.mirror_flush_timeout)
        self._executor.shutdown(wait=True)


__all__ = [
    "ProgressionStore",
    "ProgressionStoreRegistry",
    "ProgressionUpdate",
    "apply_lesson_record",
    "apply_phoneme_attempt",
]
