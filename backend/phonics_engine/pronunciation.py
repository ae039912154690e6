"""Deterministic scoring of a spoken transcript against a target utterance."""

from __future__ import annotations

import unicodedata
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidInput
from .xp_levels import round_half_up

ConfidenceLevel = Literal["excellent", "good", "needs_practice", "keep_trying"]


class PronunciationScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall: int = Field(ge=0, le=100)
    accuracy: int = Field(ge=0, le=100)
    completeness: int = Field(ge=0, le=100)
    similarity: int = Field(ge=0, le=100)


class TranscriptEvent(BaseModel):
    """Speech recognizer output; only final events are scored."""

    transcript: str = ""
    is_final: bool = False


class PronunciationFeedback(BaseModel):
    confidence_level: ConfidenceLevel
    overall_feedback: str
    encouragement: str
    specific_tips: List[str] = Field(default_factory=list)
    practice_recommendation: str


def normalize_utterance(text: str) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""
    lowered = text.lower()
    stripped = "".join(ch for ch in lowered if not unicodedata.category(ch).startswith("P"))
    return " ".join(stripped.split())


def levenshtein(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _clamp(value: int) -> int:
    return max(0, min(100, value))


def score_pronunciation(expected: str, spoken: str) -> PronunciationScore:
    norm_expected = normalize_utterance(expected)
    norm_spoken = normalize_utterance(spoken or "")
    if not norm_expected:
        raise InvalidInput("Expected text must contain at least one word.")

    distance = levenshtein(norm_expected, norm_spoken)
    longest = max(1, len(norm_expected), len(norm_spoken))
    similarity = _clamp(round_half_up(100 * (1 - distance / longest)))
    completeness = _clamp(
        round_half_up(100 * min(len(norm_spoken), len(norm_expected)) / max(1, len(norm_expected)))
    )
    accuracy = _clamp(round_half_up(0.7 * similarity + 0.3 * completeness))
    overall = _clamp(round_half_up(0.5 * accuracy + 0.3 * similarity + 0.2 * completeness))
    return PronunciationScore(
        overall=overall,
        accuracy=accuracy,
        completeness=completeness,
        similarity=similarity,
    )


def score_transcript(expected: str, event: TranscriptEvent) -> Optional[PronunciationScore]:
    if not event.is_final:
        return None
    return score_pronunciation(expected, event.transcript)


def is_word_correct(expected: str, spoken: str, threshold: float = 0.75) -> bool:
    return score_pronunciation(expected, spoken).overall >= threshold * 100


def confidence_level(overall: int, exact_match: bool = False) -> ConfidenceLevel:
    if exact_match or overall >= 90:
        return "excellent"
    if overall >= 70:
        return "good"
    if overall >= 50:
        return "needs_practice"
    return "keep_trying"


def feedback_for_score(score: PronunciationScore, expected: str, spoken: str) -> PronunciationFeedback:
    """Child-friendly feedback picked from the score tier."""
    exact = normalize_utterance(expected) == normalize_utterance(spoken or "")
    level = confidence_level(score.overall, exact)
    heard = spoken.strip() if spoken else ""
    if level == "excellent":
        return PronunciationFeedback(
            confidence_level=level,
            overall_feedback=f'Perfect! You said "{expected}" exactly right!',
            encouragement="Amazing job! You're a pronunciation star!",
            specific_tips=["You've mastered this sound!", "Try the next word when you're ready."],
            practice_recommendation="You're ready to move on to more challenging words!",
        )
    if level == "good":
        return PronunciationFeedback(
            confidence_level=level,
            overall_feedback=f'Good try! You said "{heard}" but we\'re looking for "{expected}".',
            encouragement="Almost there! You're doing great!",
            specific_tips=["Speak a little slower and clearer.", "Make sure to pronounce each sound."],
            practice_recommendation="Listen to the word again and try once more.",
        )
    if level == "needs_practice":
        return PronunciationFeedback(
            confidence_level=level,
            overall_feedback=f'Keep trying! I heard "{heard}" but the word is "{expected}".',
            encouragement="You can do it! Practice makes perfect!",
            specific_tips=["Listen carefully to each sound in the word.", "Try saying the word more slowly."],
            practice_recommendation="Listen to the word a few times, then try again.",
        )
    if not heard:
        summary = "I didn't hear anything that time. Let's try again!"
    else:
        summary = f'Let\'s practice "{expected}" together.'
    return PronunciationFeedback(
        confidence_level=level,
        overall_feedback=summary,
        encouragement="Every try makes you better!",
        specific_tips=["Listen to the word first.", "Say each sound one at a time, then blend them."],
        practice_recommendation="Play the word again and repeat it slowly.",
    )


__all__ = [
    "ConfidenceLevel",
    "PronunciationFeedback",
    "PronunciationScore",
    "TranscriptEvent",
    "confidence_level",
    "feedback_for_score",
    "is_word_correct",
    "levenshtein",
    "normalize_utterance",
    "score_pronunciation",
    "score_transcript",
]
