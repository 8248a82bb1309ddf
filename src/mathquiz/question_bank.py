"""Sample question batches from the store, falling back to bundled content."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Mapping, Sequence
from typing import Protocol

from .content_loader import load_questions
from .errors import PersistenceUnavailable
from .models import Question, Tier

logger = logging.getLogger(__name__)


class QuestionSource(Protocol):
    def questions_for_tier(self, tier: Tier) -> list[Question]: ...


class QuestionBank:
    """Question bank provider with a static fallback set."""

    def __init__(
        self,
        source: QuestionSource | None = None,
        fallback: Mapping[Tier, Sequence[Question]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._source = source
        self._fallback = fallback
        self._rng = rng or random.Random()

    @property
    def fallback(self) -> Mapping[Tier, Sequence[Question]]:
        """Bundled questions, loaded on first use."""
        if self._fallback is None:
            self._fallback = load_questions()
        return self._fallback

    def fetch_questions(self, tier: Tier, count: int) -> list[Question]:
        """Return up to `count` distinct questions of `tier` in random order."""
        if count <= 0:
            return []
        rows: list[Question] = []
        if self._source is not None:
            try:
                rows = list(self._source.questions_for_tier(tier))
            except PersistenceUnavailable as exc:
                logger.warning("Question store unavailable for %s, using bundled questions: %s", tier.slug, exc)
            else:
                if not rows:
                    logger.warning("Question store has no %s questions, using bundled questions", tier.slug)

        if not rows:
            rows = list(self.fallback.get(tier, ()))
        return self._sample(rows, tier, count)

    def _sample(self, rows: Iterable[Question], tier: Tier, count: int) -> list[Question]:
        unique: dict[str, Question] = {}
        for question in rows:
            if question.tier == tier and question.id not in unique:
                unique[question.id] = question
        pool = list(unique.values())
        self._rng.shuffle(pool)
        return pool[:count]
