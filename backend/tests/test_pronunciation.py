from __future__ import annotations

import pytest

from phonics_engine.errors import InvalidInput
from phonics_engine.pronunciation import (
    PronunciationScore,
    TranscriptEvent,
    confidence_level,
    feedback_for_score,
    is_word_correct,
    levenshtein,
    normalize_utterance,
    score_pronunciation,
    score_transcript,
)


def test_exact_match_scores_full_marks() -> None:
    assert score_pronunciation("cat", "cat") == PronunciationScore(
        overall=100, accuracy=100, completeness=100, similarity=100
    )


def test_silence_scores_zero_completeness() -> None:
    score = score_pronunciation("cat", "")
    assert score.completeness == 0
    assert score.similarity < 100
    assert score.overall == 0


def test_normalization_ignores_case_and_punctuation() -> None:
    assert score_pronunciation("Cat!", "cat") == score_pronunciation("cat", "cat")
    assert normalize_utterance("  Hello,   WORLD!  ") == "hello world"
    assert normalize_utterance("¡Sí!") == "sí"


def test_near_miss_scores() -> None:
    score = score_pronunciation("cat", "bat")
    assert score.similarity == 67
    assert score.completeness == 100
    assert score.accuracy == 77
    assert score.overall == 79
    assert is_word_correct("cat", "bat")
    assert not is_word_correct("cat", "dog")


def test_truncated_attempt_penalized() -> None:
    score = score_pronunciation("hello world", "hello")
    assert score.similarity == 45
    assert score.completeness == 45
    assert score.overall == 45


def test_empty_expected_rejected() -> None:
    with pytest.raises(InvalidInput):
        score_pronunciation("?!", "cat")


def test_levenshtein() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein("same", "same") == 0


def test_interim_transcripts_are_not_scored() -> None:
    assert score_transcript("cat", TranscriptEvent(transcript="ca", is_final=False)) is None
    final = score_transcript("cat", TranscriptEvent(transcript="cat", is_final=True))
    assert final is not None and final.overall == 100


def test_feedback_tiers() -> None:
    assert confidence_level(95) == "excellent"
    assert confidence_level(70) == "good"
    assert confidence_level(50) == "needs_practice"
    assert confidence_level(49) == "keep_trying"
    assert confidence_level(10, exact_match=True) == "excellent"

    feedback = feedback_for_score(score_pronunciation("cat", "bat"), "cat", "bat")
    assert feedback.confidence_level == "good"
    assert '"bat"' in feedback.overall_feedback
    silent = feedback_for_score(score_pronunciation("cat", ""), "cat", "")
    assert silent.confidence_level == "keep_trying"
    assert "didn't hear" in silent.overall_feedback
