"""Session engine: owns the current session and drives it to persisted results."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from . import session as transitions
from .errors import NoQuestionsAvailable, NotAuthenticated, PersistenceUnavailable
from .models import AnswerOutcome, FinishOutcome, Identity, Tier
from .progression import ProgressionReconciler, replay_pending
from .question_bank import QuestionBank
from .session import Session
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

DEFAULT_SESSION_SIZE = 5


class SessionState(Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    COMPLETING = "completing"


def utc_now() -> datetime:
    return datetime.now(UTC)


class SessionEngine:
    """Holds `Session | None` and applies the pure transitions to it."""

    def __init__(
        self,
        bank: QuestionBank,
        identity: Callable[[], Identity | None],
        *,
        reconciler: ProgressionReconciler | None = None,
        queue: SyncQueue | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._bank = bank
        self._identity = identity
        self._reconciler = reconciler
        self._queue = queue
        self._clock = clock
        self._session: Session | None = None
        self._user_id: int | None = None
        self.last_error: str | None = None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return SessionState.ABSENT
        if self._session.all_answered:
            return SessionState.COMPLETING
        return SessionState.ACTIVE

    def start(self, tier: Tier, count: int = DEFAULT_SESSION_SIZE) -> Session:
        """Fetch questions and begin a new session for the signed-in user."""
        self.last_error = None
        identity = self._identity()
        if identity is None:
            missing = NotAuthenticated()
            self.last_error = str(missing)
            raise missing

        questions = self._bank.fetch_questions(tier, count)
        if not questions:
            error = NoQuestionsAvailable(tier)
            self.last_error = str(error)
            raise error

        if self._session is not None:
            logger.debug("Replacing live session %s", self._session.session_id)
        self._session = transitions.new_session(tier, questions, self._clock())
        self._user_id = identity.user_id
        logger.info(
            "Started %s session %s with %d question(s) for user %s",
            tier.slug,
            self._session.session_id,
            len(questions),
            identity.user_id,
        )
        return self._session

    def submit_answer(self, key: str) -> AnswerOutcome | None:
        """Score an answer for the current question; None if not answerable."""
        if self._session is None:
            logger.debug("submit_answer ignored: no session")
            return None
        result = transitions.submit_answer(self._session, key, self._clock())
        if result is None:
            logger.debug("submit_answer ignored: question %d already answered", self._session.index)
            return None
        self._session, outcome = result
        return outcome

    def advance(self) -> Session | None:
        """Move past an answered question; None on an invalid transition."""
        if self._session is None:
            logger.debug("advance ignored: no session")
            return None
        updated = transitions.advance(self._session)
        if updated is None:
            logger.debug("advance ignored: question %d not answered", self._session.index)
            return None
        self._session = updated
        return updated

    def finish(self) -> FinishOutcome | None:
        """Summarize, persist (or queue) and discard the completed session."""
        if self._session is None:
            logger.debug("finish ignored: no session")
            return None
        results = transitions.summarize(self._session, self._clock())
        if results is None:
            logger.debug("finish ignored: session %s is not complete", self._session.session_id)
            return None

        user_id = self._user_id
        session_id = self._session.session_id
        self._session = None
        self._user_id = None

        progression = None
        queued = False
        if self._reconciler is not None and user_id is not None:
            try:
                progression = self._reconciler.reconcile(user_id, results)
            except PersistenceUnavailable as exc:
                logger.warning("Could not persist session %s: %s", session_id, exc)
                if self._queue is not None:
                    try:
                        self._queue.append(user_id, results)
                    except OSError as queue_exc:
                        logger.error("Could not queue session %s locally: %s", session_id, queue_exc)
                    else:
                        queued = True
            else:
                if self._queue is not None:
                    try:
                        replay_pending(self._queue, self._reconciler)
                    except OSError as queue_exc:
                        logger.warning("Could not replay offline queue %s: %s", self._queue.path, queue_exc)
        logger.info(
            "Finished session %s: %d/%d correct, %d points",
            session_id,
            results.correct_answers,
            results.total_questions,
            results.score,
        )
        return FinishOutcome(results=results, progression=progression, queued=queued)

    def reset(self) -> None:
        """Discard any session and clear the last error."""
        self._session = None
        self._user_id = None
        self.last_error = None
