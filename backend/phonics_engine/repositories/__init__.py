"""Repository layer for database-backed persistence."""

from .progression_states import ProgressionStateRepository, progression_states

__all__ = ["ProgressionStateRepository", "progression_states"]
