"""Display-state machine around the engine, with a per-question countdown."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from functools import partial

from .engine import DEFAULT_SESSION_SIZE, SessionEngine
from .errors import NoQuestionsAvailable, NotAuthenticated, PersistenceUnavailable, TierLocked
from .models import HIGHEST_TIER, LOWEST_TIER, TIMEOUT_ANSWER, AnswerOutcome, FinishOutcome, Question, Tier, UserProgress

logger = logging.getLogger(__name__)


class DisplayState(Enum):
    INTRO = "intro"
    LOADING = "loading"
    PLAYING = "playing"
    RESULTS = "results"


class Countdown:
    """Cancellable seconds counter for one question.

    Each arming bumps `generation`; anything holding an older generation or a
    different session id is stale and must be ignored.
    """

    def __init__(self) -> None:
        self.generation = 0
        self.remaining = 0
        self.session_id: str | None = None

    @property
    def active(self) -> bool:
        return self.session_id is not None

    def arm(self, seconds: int, session_id: str) -> int:
        self.generation += 1
        self.remaining = seconds
        self.session_id = session_id
        return self.generation

    def cancel(self) -> None:
        self.generation += 1
        self.remaining = 0
        self.session_id = None

    def tick(self, seconds: int = 1) -> bool:
        """Count down; True exactly when the counter reaches zero."""
        if not self.active or self.remaining <= 0:
            return False
        self.remaining = max(0, self.remaining - seconds)
        return self.remaining == 0

    def is_live(self, generation: int, session_id: str) -> bool:
        return self.active and generation == self.generation and session_id == self.session_id


class QuizOrchestrator:
    """Drive intro, loading, playing and results for one user and tier."""

    def __init__(
        self,
        engine: SessionEngine,
        progress_lookup: Callable[[int], UserProgress | None],
        *,
        session_size: int = DEFAULT_SESSION_SIZE,
    ) -> None:
        self.engine = engine
        self._progress_lookup = progress_lookup
        self._session_size = session_size
        self.countdown = Countdown()
        self.state = DisplayState.INTRO
        self.tier: Tier = LOWEST_TIER
        self.user_id: int | None = None
        self.max_tier: Tier = LOWEST_TIER
        self.error: str | None = None
        self.feedback: AnswerOutcome | None = None
        self.outcome: FinishOutcome | None = None

    @property
    def current_question(self) -> Question | None:
        session = self.engine.session
        return session.current_question if session is not None else None

    def enter(self, user_id: int, tier: Tier) -> Tier:
        """Gate access to `tier`; return the user's highest unlocked tier."""
        try:
            progress = self._progress_lookup(user_id)
        except PersistenceUnavailable as exc:
            logger.warning("Could not read progress for user %s: %s", user_id, exc)
            progress = None
        max_tier = progress.max_tier if progress is not None else LOWEST_TIER
        if tier > max_tier:
            raise TierLocked(tier, max_tier)
        self.reset()
        self.user_id = user_id
        self.tier = tier
        self.max_tier = max_tier
        return max_tier

    def start(self, tier: Tier | None = None) -> bool:
        """Load a batch and begin playing; on failure return to intro with `error`."""
        if tier is not None:
            self.tier = tier
        self.state = DisplayState.LOADING
        self.error = None
        self.feedback = None
        self.outcome = None
        try:
            self.engine.start(self.tier, self._session_size)
        except (NoQuestionsAvailable, NotAuthenticated) as exc:
            logger.info("Could not start %s session: %s", self.tier.slug, exc)
            self.countdown.cancel()
            self.error = f"Could not load questions: {exc}"
            self.state = DisplayState.INTRO
            return False
        self.state = DisplayState.PLAYING
        self._arm()
        return True

    def tick(self, seconds: int = 1) -> AnswerOutcome | None:
        """Advance the countdown; auto-submits a timeout when it runs out."""
        if self.state is not DisplayState.PLAYING:
            return None
        generation = self.countdown.generation
        session_id = self.countdown.session_id
        if session_id is None or not self.countdown.tick(seconds):
            return None
        return self._expire(generation, session_id)

    def timeout_handle(self) -> Callable[[], AnswerOutcome | None] | None:
        """Callable a host timer may invoke when the current countdown expires."""
        if self.countdown.session_id is None:
            return None
        return partial(self._expire, self.countdown.generation, self.countdown.session_id)

    def answer(self, key: str) -> AnswerOutcome | None:
        """Submit an answer for the current question and show feedback."""
        if self.state is not DisplayState.PLAYING:
            return None
        outcome = self.engine.submit_answer(key)
        if outcome is None:
            return None
        self.countdown.cancel()
        self.feedback = outcome
        return outcome

    def next(self) -> DisplayState:
        """Leave feedback: next question, or finish after the last one."""
        if self.state is not DisplayState.PLAYING or self.feedback is None:
            logger.debug("next ignored in state %s", self.state.value)
            return self.state
        if self.feedback.is_last_question_answered:
            self.countdown.cancel()
            self.state = DisplayState.LOADING
            self.outcome = self.engine.finish()
            if self.outcome is not None and self.outcome.progression is not None:
                self.max_tier = max(self.max_tier, self.outcome.progression.new_max_tier)
            self.feedback = None
            self.state = DisplayState.RESULTS
            return self.state
        if self.engine.advance() is None:
            return self.state
        self.feedback = None
        self._arm()
        return self.state

    def next_tier(self) -> Tier | None:
        """Tier to offer from the results screen, only if it is unlocked."""
        if self.state is not DisplayState.RESULTS or self.tier >= HIGHEST_TIER:
            return None
        candidate = Tier(int(self.tier) + 1)
        return candidate if candidate <= self.max_tier else None

    def reset(self) -> None:
        """Cancel the countdown, drop any session and go back to intro."""
        self.countdown.cancel()
        self.engine.reset()
        self.state = DisplayState.INTRO
        self.error = None
        self.feedback = None
        self.outcome = None

    def _arm(self) -> None:
        session = self.engine.session
        if session is None:
            return
        self.countdown.arm(session.tier.rules.max_time_seconds, session.session_id)

    def _expire(self, generation: int, session_id: str) -> AnswerOutcome | None:
        if self.state is not DisplayState.PLAYING or not self.countdown.is_live(generation, session_id):
            logger.debug("Ignoring stale countdown %d for session %s", generation, session_id)
            return None
        return self.answer(TIMEOUT_ANSWER)
