"""Durable local log of finished results whose persistence failed."""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .models import Results, Tier

logger = logging.getLogger(__name__)


class PendingResults(BaseModel):
    """Serialized form of `Results` inside a queue entry."""

    score: int = Field(ge=0)
    correct_answers: int = Field(ge=0)
    total_questions: int = Field(ge=1)
    accuracy: float = Field(ge=0.0, le=100.0)
    time_spent: int = Field(ge=0)
    tier: str

    @field_validator("tier", mode="before")
    @classmethod
    def _known_tier(cls, value: object) -> str:
        return Tier.parse(value).slug

    @model_validator(mode="after")
    def _correct_le_total(self) -> PendingResults:
        if self.correct_answers > self.total_questions:
            raise ValueError("correct_answers must be <= total_questions")
        return self

    @classmethod
    def from_results(cls, results: Results) -> PendingResults:
        return cls(
            score=results.score,
            correct_answers=results.correct_answers,
            total_questions=results.total_questions,
            accuracy=results.accuracy,
            time_spent=results.time_spent,
            tier=results.tier.slug,
        )

    def to_results(self) -> Results:
        return Results(
            score=self.score,
            correct_answers=self.correct_answers,
            total_questions=self.total_questions,
            accuracy=self.accuracy,
            time_spent=self.time_spent,
            tier=Tier.parse(self.tier),
        )


class PendingResult(BaseModel):
    """One queued record: who finished what, and when."""

    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: int
    results: PendingResults
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    synced: bool = False

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class SyncQueue:
    """Append-only JSON-lines file of `PendingResult` records."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def append(self, user_id: int, results: Results) -> PendingResult:
        """Durably append one entry; the write is flushed and fsynced."""
        entry = PendingResult(user_id=user_id, results=PendingResults.from_results(results))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(entry.model_dump_json() + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        logger.warning("Queued results for user %s locally (%s)", user_id, entry.entry_id)
        return entry

    def entries(self) -> list[PendingResult]:
        """Read every valid entry; corrupted lines are skipped."""
        return list(self._iter_entries())

    def pending(self) -> list[PendingResult]:
        return [entry for entry in self._iter_entries() if not entry.synced]

    def compact(self, synced_ids: set[str]) -> int:
        """Drop synced entries and rewrite the file atomically; return entries kept."""
        kept = [entry for entry in self._iter_entries() if not entry.synced and entry.entry_id not in synced_ids]
        if not self.path.exists():
            return 0
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for entry in kept:
                handle.write(entry.model_dump_json() + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)
        return len(kept)

    def __len__(self) -> int:
        return len(self.pending())

    def _iter_entries(self) -> Iterator[PendingResult]:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    yield PendingResult.model_validate_json(text)
                except ValidationError as exc:
                    logger.warning("Skipping corrupted queue line %d in %s: %s", line_no, self.path, exc)
