"""Core domain models for tiered quiz sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum

from .errors import ContentError

OPTION_KEYS: tuple[str, ...] = ("a", "b", "c", "d")
TIMEOUT_ANSWER = ""


class Tier(IntEnum):
    """Difficulty tier, ordered from easiest to hardest."""

    FACIL = 1
    MEDIO = 2
    DIFICIL = 3
    EXPERT = 4

    @property
    def slug(self) -> str:
        """Stable wire name used in content files and the database."""
        return self.name.lower()

    @property
    def rules(self) -> TierRules:
        """Scoring constants for this tier."""
        return TIER_RULES[self]

    @classmethod
    def parse(cls, value: object) -> Tier:
        """Parse a tier from its wire name, its number, or a Tier."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise ValueError(f"Unknown tier number: {value}") from None
        if isinstance(value, str):
            text = value.strip().lower()
            if text.isdigit():
                return cls.parse(int(text))
            for tier in cls:
                if tier.slug == text:
                    return tier
        raise ValueError(f"Unknown tier: {value!r}")


@dataclass(frozen=True)
class TierRules:
    """Base points and per-question time allowance for a tier."""

    base_points: int
    max_time_seconds: int


TIER_RULES: dict[Tier, TierRules] = {
    Tier.FACIL: TierRules(base_points=10, max_time_seconds=30),
    Tier.MEDIO: TierRules(base_points=20, max_time_seconds=60),
    Tier.DIFICIL: TierRules(base_points=30, max_time_seconds=120),
    Tier.EXPERT: TierRules(base_points=50, max_time_seconds=180),
}

LOWEST_TIER = min(Tier)
HIGHEST_TIER = max(Tier)


@dataclass(frozen=True)
class Question:
    """One multiple-choice question with four labeled options."""

    id: str
    prompt: str
    options: dict[str, str]
    correct_key: str
    tier: Tier

    def __post_init__(self) -> None:
        if not self.id:
            raise ContentError("Question id is required.")
        if tuple(sorted(self.options)) != OPTION_KEYS:
            raise ContentError(f"Question '{self.id}' must have exactly the options {', '.join(OPTION_KEYS)}.")
        if self.correct_key not in OPTION_KEYS:
            raise ContentError(f"Question '{self.id}' has invalid correct key {self.correct_key!r}.")

    def option(self, key: str) -> str:
        """Return option text for a key."""
        return self.options[key]


@dataclass(frozen=True)
class AnswerOutcome:
    """Feedback for one submitted answer."""

    is_correct: bool
    correct_key: str
    points_awarded: int
    is_last_question_answered: bool


@dataclass(frozen=True)
class Results:
    """Summary of one finished session."""

    score: int
    correct_answers: int
    total_questions: int
    accuracy: float
    time_spent: int
    tier: Tier


@dataclass(frozen=True)
class UserProgress:
    """Persisted per-user aggregate progress."""

    user_id: int
    max_tier: Tier
    total_correct: int
    total_points: int
    updated_at: str


@dataclass(frozen=True)
class PhaseResult:
    """One historical row per finished session."""

    id: int
    user_id: int
    tier: Tier
    correct_answers: int
    points_earned: int
    total_questions: int
    completed_at: str

    @property
    def accuracy(self) -> float:
        """Percentage of correct answers for this session."""
        if self.total_questions <= 0:
            return 0.0
        return 100.0 * self.correct_answers / self.total_questions


@dataclass(frozen=True)
class ReconcileOutcome:
    """Tier unlock decision produced by the progression reconciler."""

    previous_max_tier: Tier
    new_max_tier: Tier
    unlocked_new_tier: bool


@dataclass(frozen=True)
class FinishOutcome:
    """Results of a finished session plus what happened when persisting them."""

    results: Results
    progression: ReconcileOutcome | None
    queued: bool


@dataclass(frozen=True)
class Identity:
    """Signed-in user as seen by the engine."""

    user_id: int
    name: str


@dataclass(frozen=True)
class RankingEntry:
    """One leaderboard row."""

    name: str
    total_points: int
    updated_at: str


@dataclass(frozen=True)
class UserStats:
    """Aggregated statistics for the dashboard view."""

    total_score: int
    total_games: int
    average_accuracy: float
    max_tier: Tier
    last_played: datetime | None
