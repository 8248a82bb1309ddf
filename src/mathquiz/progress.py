"""SQLite persistence for profiles, questions, progress and phase history."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from .errors import PersistenceUnavailable
from .models import OPTION_KEYS, Identity, PhaseResult, Question, RankingEntry, Results, Tier, UserProgress

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@contextmanager
def _guard(operation: str) -> Iterator[None]:
    """Surface driver failures as `PersistenceUnavailable`."""
    try:
        yield
    except sqlite3.Error as exc:
        logger.warning("Progress store failed during %s: %s", operation, exc)
        raise PersistenceUnavailable(f"{operation} failed: {exc}") from exc


class ProgressTransaction:
    """Read-modify-write view over one open `BEGIN IMMEDIATE` transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_progress(self, user_id: int) -> UserProgress | None:
        """Read the progress row for a user inside the transaction."""
        return _select_progress(self._conn, user_id)

    def append_phase_result(self, user_id: int, results: Results, completed_at: str) -> int:
        """Insert one history row; history rows are never updated."""
        cursor = self._conn.execute(
            """
            INSERT INTO phase_results (user_id, tier, correct_answers, points_earned, total_questions, completed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                int(results.tier),
                results.correct_answers,
                results.score,
                results.total_questions,
                completed_at,
            ),
        )
        return int(cursor.lastrowid or 0)

    def upsert_progress(
        self, user_id: int, max_tier: Tier, add_correct: int, add_points: int, updated_at: str
    ) -> None:
        """Create or merge the progress row; `max_tier` can only move up."""
        self._conn.execute(
            """
            INSERT INTO user_progress (user_id, max_tier, total_correct, total_points, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                max_tier = MAX(user_progress.max_tier, excluded.max_tier),
                total_correct = user_progress.total_correct + excluded.total_correct,
                total_points = user_progress.total_points + excluded.total_points,
                updated_at = excluded.updated_at
            """,
            (user_id, int(max_tier), add_correct, add_points, updated_at),
        )


class ProgressStore:
    """Database access layer for profiles, question rows and learner progress."""

    def __init__(self, db_path: Path | str, *, lock_timeout: float = 5.0) -> None:
        """Initialize database and schema.

        `lock_timeout` is how long a write waits on another connection's lock
        before the store reports itself unavailable.
        """
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target, timeout=lock_timeout)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create profile, question, progress and history tables."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS questions (
                    id TEXT PRIMARY KEY,
                    tier INTEGER NOT NULL,
                    prompt TEXT NOT NULL,
                    option_a TEXT NOT NULL,
                    option_b TEXT NOT NULL,
                    option_c TEXT NOT NULL,
                    option_d TEXT NOT NULL,
                    correct_key TEXT NOT NULL CHECK (correct_key IN ('a', 'b', 'c', 'd'))
                )
                """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_questions_tier ON questions (tier)")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS user_progress (
                    user_id INTEGER PRIMARY KEY,
                    max_tier INTEGER NOT NULL DEFAULT 1,
                    total_correct INTEGER NOT NULL DEFAULT 0,
                    total_points INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS phase_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    tier INTEGER NOT NULL,
                    correct_answers INTEGER NOT NULL,
                    points_earned INTEGER NOT NULL,
                    total_questions INTEGER NOT NULL,
                    completed_at TEXT NOT NULL
                )
                """)
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_phase_results_user ON phase_results (user_id, completed_at)"
            )

    def list_profiles(self) -> list[Identity]:
        """Return profiles ordered by name."""
        rows = self._conn.execute("SELECT id, name FROM profiles ORDER BY name").fetchall()
        return [Identity(user_id=int(row["id"]), name=str(row["name"])) for row in rows]

    def create_profile(self, name: str) -> Identity:
        """Create a new profile."""
        now = datetime.now(UTC).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO profiles (name, created_at) VALUES (?, ?)",
                (name, now),
            )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Could not create profile.")
        return Identity(user_id=int(row_id), name=name)

    def get_profile(self, user_id: int) -> Identity | None:
        """Get one profile by id."""
        row = self._conn.execute("SELECT id, name FROM profiles WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return Identity(user_id=int(row["id"]), name=str(row["name"]))

    def delete_profile(self, user_id: int) -> bool:
        """Delete profile together with its progress and history."""
        with self._conn:
            self._conn.execute("DELETE FROM phase_results WHERE user_id = ?", (user_id,))
            self._conn.execute("DELETE FROM user_progress WHERE user_id = ?", (user_id,))
            cursor = self._conn.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
        return cursor.rowcount > 0

    def questions_for_tier(self, tier: Tier) -> list[Question]:
        """Return every stored question for a tier in insertion order."""
        with _guard("question query"):
            rows = self._conn.execute(
                """
                SELECT id, tier, prompt, option_a, option_b, option_c, option_d, correct_key
                FROM questions
                WHERE tier = ?
                ORDER BY rowid
                """,
                (int(tier),),
            ).fetchall()
        return [
            Question(
                id=str(row["id"]),
                prompt=str(row["prompt"]),
                options={key: str(row[f"option_{key}"]) for key in OPTION_KEYS},
                correct_key=str(row["correct_key"]),
                tier=Tier(int(row["tier"])),
            )
            for row in rows
        ]

    def import_questions(self, questions: Iterable[Question]) -> int:
        """Insert or replace question rows by id; return the number written."""
        rows = [
            (
                question.id,
                int(question.tier),
                question.prompt,
                *(question.options[key] for key in OPTION_KEYS),
                question.correct_key,
            )
            for question in questions
        ]
        with _guard("question import"), self._conn:
            self._conn.executemany(
                """
                INSERT INTO questions (id, tier, prompt, option_a, option_b, option_c, option_d, correct_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    tier = excluded.tier,
                    prompt = excluded.prompt,
                    option_a = excluded.option_a,
                    option_b = excluded.option_b,
                    option_c = excluded.option_c,
                    option_d = excluded.option_d,
                    correct_key = excluded.correct_key
                """,
                rows,
            )
        return len(rows)

    def question_counts(self) -> dict[Tier, int]:
        """Return stored question counts for every tier."""
        counts = {tier: 0 for tier in Tier}
        rows = self._conn.execute("SELECT tier, COUNT(*) AS total FROM questions GROUP BY tier").fetchall()
        for row in rows:
            counts[Tier(int(row["tier"]))] = int(row["total"])
        return counts

    def get_progress(self, user_id: int) -> UserProgress | None:
        """Return the progress row for a user, if one exists."""
        with _guard("progress read"):
            return _select_progress(self._conn, user_id)

    @contextmanager
    def reconcile_transaction(self) -> Iterator[ProgressTransaction]:
        """Open an immediate write transaction for one user's reconciliation."""
        with _guard("reconciliation"):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield ProgressTransaction(self._conn)
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    def list_phase_results(self, user_id: int, limit: int = 10) -> list[PhaseResult]:
        """Return the newest history rows for a user."""
        with _guard("history query"):
            rows = self._conn.execute(
                """
                SELECT id, user_id, tier, correct_answers, points_earned, total_questions, completed_at
                FROM phase_results
                WHERE user_id = ?
                ORDER BY completed_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [
            PhaseResult(
                id=int(row["id"]),
                user_id=int(row["user_id"]),
                tier=Tier(int(row["tier"])),
                correct_answers=int(row["correct_answers"]),
                points_earned=int(row["points_earned"]),
                total_questions=int(row["total_questions"]),
                completed_at=str(row["completed_at"]),
            )
            for row in rows
        ]

    def phase_result_totals(self, user_id: int) -> tuple[int, int, int, str | None]:
        """Return (games, correct answers, questions answered, last completion) for a user."""
        with _guard("history totals"):
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS games,
                       COALESCE(SUM(correct_answers), 0) AS correct,
                       COALESCE(SUM(total_questions), 0) AS questions,
                       MAX(completed_at) AS last_completed
                FROM phase_results
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        last = row["last_completed"]
        return (int(row["games"]), int(row["correct"]), int(row["questions"]), str(last) if last else None)

    def ranking(self, limit: int = 20) -> list[RankingEntry]:
        """Return users ordered by accumulated points."""
        with _guard("ranking query"):
            rows = self._conn.execute(
                """
                SELECT profiles.name AS name, user_progress.total_points AS total_points,
                       user_progress.updated_at AS updated_at
                FROM user_progress
                JOIN profiles ON profiles.id = user_progress.user_id
                ORDER BY user_progress.total_points DESC, profiles.name ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            RankingEntry(name=str(row["name"]), total_points=int(row["total_points"]), updated_at=str(row["updated_at"]))
            for row in rows
        ]

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass


def _select_progress(conn: sqlite3.Connection, user_id: int) -> UserProgress | None:
    row = conn.execute(
        """
        SELECT user_id, max_tier, total_correct, total_points, updated_at
        FROM user_progress
        WHERE user_id = ?
        """,
        (user_id,),
    ).fetchone()
    if row is None:
        return None
    return UserProgress(
        user_id=int(row["user_id"]),
        max_tier=Tier(int(row["max_tier"])),
        total_correct=int(row["total_correct"]),
        total_points=int(row["total_points"]),
        updated_at=str(row["updated_at"]),
    )
