"""Exception types shared by the quiz engine, store and shell."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Tier


class QuizError(Exception):
    """Base class for all quiz application errors."""


class NoQuestionsAvailable(QuizError):
    """Neither the question store nor the bundled bank has questions for a tier."""

    def __init__(self, tier: Tier) -> None:
        super().__init__(f"No questions found for tier '{tier.slug}'.")
        self.tier = tier


class NotAuthenticated(QuizError):
    """A session was requested without a user identity."""

    def __init__(self) -> None:
        super().__init__("A signed-in profile is required to start a quiz.")


class PersistenceUnavailable(QuizError):
    """The progress store could not be reached or failed mid-operation."""


class TierLocked(QuizError):
    """The requested tier is above the user's maximum unlocked tier."""

    def __init__(self, tier: Tier, max_tier: Tier) -> None:
        super().__init__(f"Tier '{tier.slug}' is locked (highest unlocked: '{max_tier.slug}').")
        self.tier = tier
        self.max_tier = max_tier


class ConfigError(QuizError):
    """Configuration file is missing or holds invalid values."""


class ContentError(QuizError, ValueError):
    """Question content failed validation."""
