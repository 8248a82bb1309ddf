"""Application service wiring store, question bank, engine and progression."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from .content_loader import load_questions_from_file
from .engine import DEFAULT_SESSION_SIZE, SessionEngine, utc_now
from .events import ProgressEvents
from .models import LOWEST_TIER, Identity, PhaseResult, RankingEntry, Tier, UserStats
from .orchestrator import QuizOrchestrator
from .progress import ProgressStore
from .progression import DEFAULT_UNLOCK_THRESHOLD, ProgressionReconciler, replay_pending
from .question_bank import QuestionBank
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

RANKING_LIMIT = 20
HISTORY_LIMIT = 10


class QuizService:
    """Coordinates profiles, quiz sessions and progress views."""

    def __init__(
        self,
        db_path: Path | str,
        queue_path: Path | str,
        *,
        session_size: int = DEFAULT_SESSION_SIZE,
        unlock_threshold: int = DEFAULT_UNLOCK_THRESHOLD,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize service with database and offline queue paths."""
        self.progress = ProgressStore(db_path)
        self.events = ProgressEvents()
        self.queue = SyncQueue(queue_path)
        self.session_size = session_size
        self.reconciler = ProgressionReconciler(
            self.progress, events=self.events, unlock_threshold=unlock_threshold, clock=clock
        )
        self.bank = QuestionBank(source=self.progress, rng=rng)
        self.engine = SessionEngine(
            self.bank, lambda: self.current, reconciler=self.reconciler, queue=self.queue, clock=clock
        )
        self.current: Identity | None = None

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> QuizService:
        """Build a service from a validated configuration dictionary."""
        return cls(
            Path(cfg["storage"]["db_path"]),
            Path(cfg["storage"]["offline_queue_path"]),
            session_size=cfg["quiz"]["questions_per_session"],
            unlock_threshold=cfg["quiz"]["unlock_threshold"],
        )

    def list_profiles(self) -> list[Identity]:
        """Return all profiles."""
        return self.progress.list_profiles()

    def create_profile(self, name: str) -> Identity:
        """Create profile by name."""
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Profile name cannot be empty.")
        return self.progress.create_profile(cleaned)

    def delete_profile(self, user_id: int) -> bool:
        """Delete profile and sign out if it was the current one."""
        if self.current is not None and self.current.user_id == user_id:
            self.sign_out()
        return self.progress.delete_profile(user_id)

    def sign_in(self, user_id: int) -> Identity | None:
        """Make an existing profile the current identity."""
        profile = self.progress.get_profile(user_id)
        if profile is not None:
            self.current = profile
        return profile

    def sign_out(self) -> None:
        self.engine.reset()
        self.current = None

    def orchestrator(self) -> QuizOrchestrator:
        """Create a display-state machine over this service's engine."""
        return QuizOrchestrator(self.engine, self.progress.get_progress, session_size=self.session_size)

    def max_tier(self, user_id: int) -> Tier:
        """Return the highest tier the user may play."""
        progress = self.progress.get_progress(user_id)
        return progress.max_tier if progress is not None else LOWEST_TIER

    def user_stats(self, user_id: int) -> UserStats:
        """Aggregate score, games, accuracy and recency for one user."""
        progress = self.progress.get_progress(user_id)
        games, correct, questions, last_completed = self.progress.phase_result_totals(user_id)
        return UserStats(
            total_score=progress.total_points if progress is not None else 0,
            total_games=games,
            average_accuracy=100.0 * correct / questions if questions else 0.0,
            max_tier=progress.max_tier if progress is not None else LOWEST_TIER,
            last_played=datetime.fromisoformat(last_completed) if last_completed else None,
        )

    def ranking(self, limit: int = RANKING_LIMIT) -> list[RankingEntry]:
        """Return the global leaderboard."""
        return self.progress.ranking(limit)

    def history(self, user_id: int, limit: int = HISTORY_LIMIT) -> list[PhaseResult]:
        """Return the newest finished sessions for a user."""
        return self.progress.list_phase_results(user_id, limit)

    def import_questions(self, path: Path | str) -> int:
        """Import questions from a JSON file into the question store."""
        questions = load_questions_from_file(path)
        count = self.progress.import_questions(questions)
        logger.info("Imported %d question(s) from %s", count, path)
        return count

    def question_counts(self) -> dict[Tier, int]:
        return self.progress.question_counts()

    def pending_count(self) -> int:
        """Number of finished sessions still waiting in the offline queue."""
        return len(self.queue)

    def sync_pending(self) -> int:
        """Replay queued results into the store."""
        return replay_pending(self.queue, self.reconciler)

    def close(self) -> None:
        self.progress.close()
