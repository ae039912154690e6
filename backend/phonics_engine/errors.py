"""Recoverable errors raised by the progression and lesson engine.

Every mutating operation either commits fully or raises one of these before
touching state, so callers can re-present the UI and retry.
"""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for engine errors."""


class InvalidAmount(ProgressionError, ValueError):
    """Raised for negative XP amounts or negative progress deltas."""


class InvalidInput(ProgressionError, ValueError):
    """Raised for malformed engine input such as an empty target utterance."""


class PhaseNotReady(ProgressionError, RuntimeError):
    """Raised when a lesson phase gate does not hold for the requested action."""


class WorldLocked(ProgressionError, PermissionError):
    """Raised when a lesson belongs to a world the learner has not unlocked yet."""


class UnknownQuestType(ProgressionError, LookupError):
    """Raised when a quest type is not part of the quest vocabulary."""


class UnknownAchievementId(ProgressionError, LookupError):
    """Raised when an achievement id is missing from the catalog."""


__all__ = [
    "InvalidAmount",
    "InvalidInput",
    "PhaseNotReady",
    "ProgressionError",
    "UnknownAchievementId",
    "UnknownQuestType",
    "WorldLocked",
]
