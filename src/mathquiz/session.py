"""Immutable quiz session values and the pure transitions between them.

Every function here takes a `Session` and returns a new one; nothing is
mutated in place. Callers that hold the "current" session (see
`mathquiz.engine`) replace their reference with the returned value. An
operation called in the wrong state returns ``None`` instead of raising so
duplicate dispatches from the shell or timer are harmless.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime

from .models import TIMEOUT_ANSWER, AnswerOutcome, Question, Results, Tier

BONUS_SECONDS_PER_POINT = 5


@dataclass(frozen=True)
class Session:
    """One in-progress attempt at a fixed batch of questions."""

    questions: tuple[Question, ...]
    index: int
    answers: tuple[str, ...]
    score: int
    started_at: datetime
    tier: Tier
    session_id: str

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Question | None:
        """Question at the current index, or None once past the end."""
        if self.index >= len(self.questions):
            return None
        return self.questions[self.index]

    @property
    def current_answered(self) -> bool:
        return len(self.answers) > self.index

    @property
    def all_answered(self) -> bool:
        return len(self.answers) == len(self.questions)


def new_session(tier: Tier, questions: Sequence[Question], now: datetime) -> Session:
    """Create a session at question 0 with no answers and zero score."""
    if not questions:
        raise ValueError("A session needs at least one question.")
    return Session(
        questions=tuple(questions),
        index=0,
        answers=(),
        score=0,
        started_at=now,
        tier=tier,
        session_id=uuid.uuid4().hex,
    )


def elapsed_for_current(session: Session, now: datetime) -> float:
    """Seconds spent on the current question.

    Every earlier question is assumed to have consumed its full time window,
    so a fast answer early on does not shorten the window for later ones.
    """
    window = session.tier.rules.max_time_seconds
    offset = len(session.answers) * window
    return max(0.0, (now - session.started_at).total_seconds() - offset)


def time_bonus(max_time_seconds: int, elapsed_seconds: float) -> int:
    """One bonus point per full five seconds left on the clock."""
    return max(0, math.floor((max_time_seconds - elapsed_seconds) / BONUS_SECONDS_PER_POINT))


def points_for(session: Session, is_correct: bool, now: datetime) -> int:
    """Points awarded for answering the current question at `now`."""
    if not is_correct:
        return 0
    rules = session.tier.rules
    return rules.base_points + time_bonus(rules.max_time_seconds, elapsed_for_current(session, now))


def submit_answer(session: Session, key: str, now: datetime) -> tuple[Session, AnswerOutcome] | None:
    """Record an answer for the current question without advancing."""
    if session.index >= session.total_questions or session.current_answered:
        return None
    question = session.questions[session.index]
    answer = key or TIMEOUT_ANSWER
    is_correct = answer != TIMEOUT_ANSWER and answer == question.correct_key
    points = points_for(session, is_correct, now)
    updated = replace(session, answers=(*session.answers, answer), score=session.score + points)
    outcome = AnswerOutcome(
        is_correct=is_correct,
        correct_key=question.correct_key,
        points_awarded=points,
        is_last_question_answered=updated.all_answered,
    )
    return updated, outcome


def advance(session: Session) -> Session | None:
    """Move to the next question once the current one has an answer."""
    if session.index >= session.total_questions or not session.current_answered:
        return None
    return replace(session, index=session.index + 1)


def correct_count(session: Session) -> int:
    return sum(1 for question, key in zip(session.questions, session.answers) if key == question.correct_key)


def summarize(session: Session, now: datetime) -> Results | None:
    """Build final results; None unless every question has been answered."""
    if not session.all_answered:
        return None
    if session.index not in (session.total_questions - 1, session.total_questions):
        return None
    correct = correct_count(session)
    total = session.total_questions
    return Results(
        score=session.score,
        correct_answers=correct,
        total_questions=total,
        accuracy=100.0 * correct / total,
        time_spent=max(0, math.floor((now - session.started_at).total_seconds())),
        tier=session.tier,
    )
