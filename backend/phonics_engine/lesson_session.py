"""Gated four-phase lesson session: listen, practice, play, assess.

A session is ephemeral. It never touches progression state itself; once the
assess phase is advanced it yields a ``LessonResult`` that the progression
store applies. Abandoning the session discards everything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from statistics import mean
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import InvalidInput, PhaseNotReady
from .pronunciation import PronunciationScore, TranscriptEvent, score_transcript
from .xp_levels import round_half_up

logger = logging.getLogger(__name__)

LessonPhase = Literal["listen", "practice", "play", "assess"]
PHASES: Tuple[LessonPhase, ...] = ("listen", "practice", "play", "assess")
PHASE_GATE_CAP = 3
DEFAULT_ASSESSMENT_QUESTIONS = 5
DEFAULT_BASE_XP = 50


class LessonPlan(BaseModel):
    """Content counts a session needs to gate and grade a lesson."""

    lesson_id: str
    world_id: Optional[str] = None
    title: str = ""
    listen_items: List[str] = Field(default_factory=list)
    practice_words: List[str] = Field(default_factory=list)
    phoneme_ids: List[str] = Field(default_factory=list)
    play_rounds: int = Field(default=5, ge=0)
    assessment_questions: int = Field(default=DEFAULT_ASSESSMENT_QUESTIONS, ge=1)
    base_xp: int = Field(default=DEFAULT_BASE_XP, ge=0)


class PhonemeAttempt(BaseModel):
    phoneme_id: str
    score: int = Field(ge=0, le=100)


class LessonResult(BaseModel):
    lesson_id: str
    world_id: Optional[str] = None
    total_score: int = Field(ge=0, le=100)
    stars: int = Field(ge=0, le=3)
    xp_multiplier: float
    xp_earned: int = Field(ge=0)
    practice_score_avg: float
    play_score_avg: float
    assess_score_avg: float
    hints_used: int = Field(ge=0)
    time_spent_seconds: int = Field(ge=0)
    phoneme_attempts: List[PhonemeAttempt] = Field(default_factory=list)
    completed_at: datetime

    @property
    def is_perfect(self) -> bool:
        return self.total_score == 100


def stars_for_score(total_score: int) -> int:
    if total_score >= 90:
        return 3
    if total_score >= 70:
        return 2
    if total_score >= 50:
        return 1
    return 0


def xp_multiplier(stars: int, hints_used: int) -> float:
    multiplier = 1.5 if stars == 3 else 1.2 if stars == 2 else 1.0
    if hints_used == 0:
        multiplier += 0.1
    return round(multiplier, 2)


@dataclass
class _PhaseMetrics:
    listened: List[str] = field(default_factory=list)
    practice_scores: List[int] = field(default_factory=list)
    phoneme_attempts: List[PhonemeAttempt] = field(default_factory=list)
    play_scores: List[int] = field(default_factory=list)
    play_correct: int = 0
    assess_answered: int = 0
    assess_correct: int = 0


class LessonSession:
    """Single lesson attempt driven strictly forward through the phases."""

    def __init__(self, plan: LessonPlan, started_at: Optional[datetime] = None) -> None:
        self.plan = plan
        self.started_at = started_at or datetime.now(timezone.utc)
        self.hints_used = 0
        self.phase_completion: Dict[LessonPhase, bool] = {phase: False for phase in PHASES}
        self.result: Optional[LessonResult] = None
        self.abandoned = False
        # Set by the progression store once the result has been applied.
        self.recorded = False
        self._phase_index = 0
        self._metrics = _PhaseMetrics()

    @property
    def phase(self) -> LessonPhase:
        return PHASES[self._phase_index]

    @property
    def is_complete(self) -> bool:
        return self.result is not None

    def _require_phase(self, phase: LessonPhase) -> None:
        if self.abandoned:
            raise PhaseNotReady("Lesson session was exited.")
        if self.is_complete:
            raise PhaseNotReady("Lesson session is already complete.")
        if self.phase != phase:
            raise PhaseNotReady(f"Cannot record {phase} activity during the {self.phase} phase.")

    # Phase activity -----------------------------------------------------

    def record_listen(self, item_id: str) -> int:
        self._require_phase("listen")
        if item_id not in self.plan.listen_items:
            raise InvalidInput(f"'{item_id}' is not part of this lesson's listen content.")
        if item_id not in self._metrics.listened:
            self._metrics.listened.append(item_id)
        return len(self._metrics.listened)

    def record_practice(self, score: int, phoneme_id: Optional[str] = None) -> int:
        self._require_phase("practice")
        if not 0 <= score <= 100:
            raise InvalidInput(f"Practice scores must be within 0..100, got {score}.")
        if len(self._metrics.practice_scores) >= len(self.plan.practice_words):
            raise InvalidInput("Every practice word has already been attempted.")
        self._metrics.practice_scores.append(score)
        if phoneme_id:
            self._metrics.phoneme_attempts.append(PhonemeAttempt(phoneme_id=phoneme_id, score=score))
        return len(self._metrics.practice_scores)

    def record_practice_choice(self, correct: bool, phoneme_id: Optional[str] = None) -> int:
        return self.record_practice(100 if correct else 0, phoneme_id)

    def submit_transcript(
        self,
        expected: str,
        event: TranscriptEvent,
        phoneme_id: Optional[str] = None,
    ) -> Optional[PronunciationScore]:
        """Score a final transcript as a practice attempt; interim events are ignored."""
        self._require_phase("practice")
        score = score_transcript(expected, event)
        if score is None:
            return None
        self.record_practice(score.overall, phoneme_id)
        return score

    def record_play_round(self, correct: bool, score: Optional[int] = None) -> int:
        self._require_phase("play")
        round_score = score if score is not None else (100 if correct else 0)
        if not 0 <= round_score <= 100:
            raise InvalidInput(f"Round scores must be within 0..100, got {round_score}.")
        if len(self._metrics.play_scores) >= self.plan.play_rounds:
            raise InvalidInput("All play rounds have already been played.")
        self._metrics.play_scores.append(round_score)
        if correct:
            self._metrics.play_correct += 1
        return self._metrics.play_correct

    def record_assessment_answer(self, correct: bool) -> int:
        self._require_phase("assess")
        if self._metrics.assess_answered >= self.plan.assessment_questions:
            raise InvalidInput("All assessment questions have already been answered.")
        self._metrics.assess_answered += 1
        if correct:
            self._metrics.assess_correct += 1
        return self._metrics.assess_answered

    def use_hint(self) -> int:
        if self.abandoned or self.is_complete:
            raise PhaseNotReady("Hints are only available during an active lesson.")
        self.hints_used += 1
        return self.hints_used

    # Gating -------------------------------------------------------------

    def gate_requirement(self, phase: LessonPhase) -> Tuple[int, int]:
        """Return ``(progress, required)`` for the phase's completion predicate."""
        metrics = self._metrics
        if phase == "listen":
            return len(metrics.listened), min(PHASE_GATE_CAP, len(self.plan.listen_items))
        if phase == "practice":
            return len(metrics.practice_scores), min(PHASE_GATE_CAP, len(self.plan.practice_words))
        if phase == "play":
            return metrics.play_correct, min(PHASE_GATE_CAP, self.plan.play_rounds)
        return metrics.assess_answered, self.plan.assessment_questions

    def can_advance(self) -> bool:
        if self.abandoned or self.is_complete:
            return False
        progress, required = self.gate_requirement(self.phase)
        return progress >= required

    def advance(self, now: Optional[datetime] = None) -> Optional[LessonResult]:
        """Move to the next phase, or finish the lesson when leaving assess."""
        if self.abandoned or self.is_complete:
            raise PhaseNotReady("Lesson session is no longer active.")
        progress, required = self.gate_requirement(self.phase)
        if progress < required:
            raise PhaseNotReady(
                f"The {self.phase} phase needs {required} before advancing (have {progress})."
            )
        self.phase_completion[self.phase] = True
        if self.phase == "assess":
            self.result = self._grade(now or datetime.now(timezone.utc))
            logger.debug("Lesson %s graded: %s", self.plan.lesson_id, self.result.total_score)
            return self.result
        self._phase_index += 1
        return None

    def review(self, phase: LessonPhase) -> Dict[str, object]:
        """Read-only metrics for a phase that has already been completed."""
        if not self.phase_completion.get(phase):
            raise PhaseNotReady(f"The {phase} phase has not been completed yet.")
        progress, required = self.gate_requirement(phase)
        return {"phase": phase, "progress": progress, "required": required, "completed": True}

    def exit(self) -> None:
        self.abandoned = True

    # Grading ------------------------------------------------------------

    def _grade(self, now: datetime) -> LessonResult:
        metrics = self._metrics
        practice_avg = float(mean(metrics.practice_scores)) if metrics.practice_scores else 0.0
        play_avg = float(mean(metrics.play_scores)) if metrics.play_scores else 0.0
        assess_avg = (
            100 * metrics.assess_correct / metrics.assess_answered if metrics.assess_answered else 0.0
        )
        total = max(0, min(100, round_half_up(0.3 * practice_avg + 0.3 * play_avg + 0.4 * assess_avg)))
        stars = stars_for_score(total)
        multiplier = xp_multiplier(stars, self.hints_used)
        elapsed = max(0, int((now - self.started_at).total_seconds()))
        return LessonResult(
            lesson_id=self.plan.lesson_id,
            world_id=self.plan.world_id,
            total_score=total,
            stars=stars,
            xp_multiplier=multiplier,
            xp_earned=round_half_up(self.plan.base_xp * multiplier),
            practice_score_avg=practice_avg,
            play_score_avg=play_avg,
            assess_score_avg=assess_avg,
            hints_used=self.hints_used,
            time_spent_seconds=elapsed,
            phoneme_attempts=list(metrics.phoneme_attempts),
            completed_at=now,
        )


__all__ = [
    "DEFAULT_ASSESSMENT_QUESTIONS",
    "DEFAULT_BASE_XP",
    "LessonPhase",
    "LessonPlan",
    "LessonResult",
    "LessonSession",
    "PHASES",
    "PhonemeAttempt",
    "stars_for_score",
    "xp_multiplier",
]
