from __future__ import annotations

import shutil
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from mathquiz.models import Question, Tier  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Provide per-test temporary directory path inside the workspace.

    This overrides pytest's builtin ``tmp_path`` fixture so temporary files
    (offline queues, SQLite files, config files) stay under ``.tmp_pytest/``.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def make_question() -> Callable[..., Question]:
    def _make(question_id: str, tier: Tier = Tier.FACIL, correct_key: str = "a") -> Question:
        return Question(
            id=question_id,
            prompt=f"Prompt {question_id}",
            options={"a": "1", "b": "2", "c": "3", "d": "4"},
            correct_key=correct_key,
            tier=tier,
        )

    return _make
