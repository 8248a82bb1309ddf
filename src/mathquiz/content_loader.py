"""Load declarative question content from bundled JSON resources."""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

from .errors import ContentError
from .models import OPTION_KEYS, Question, Tier

CONTENT_PACKAGE = "mathquiz.content.questions"

# Alternate field names accepted in exported question banks.
_LEGACY_FIELDS = {
    "id": "id_pergunta",
    "prompt": "enunciado",
    "correct_key": "resposta_correta",
    "tier": "nivel",
}


def question_from_dict(raw: dict[str, Any], tier: Tier | None = None) -> Question:
    """Build a question from raw JSON content in either field naming."""
    question_id = str(_field(raw, "id", "")).strip()
    if not question_id:
        raise ContentError("Question without an id.")

    prompt = str(_field(raw, "prompt", "")).strip()
    if not prompt:
        raise ContentError(f"Question '{question_id}' has an empty prompt.")

    raw_options = raw.get("options")
    if isinstance(raw_options, dict):
        options = {str(key).strip().lower(): str(value) for key, value in raw_options.items()}
    else:
        options = {key: str(raw[f"alternativa_{key}"]) for key in OPTION_KEYS if f"alternativa_{key}" in raw}

    raw_tier = _field(raw, "tier", None)
    if raw_tier is None:
        if tier is None:
            raise ContentError(f"Question '{question_id}' has no tier.")
        question_tier = tier
    else:
        try:
            question_tier = Tier.parse(raw_tier)
        except ValueError as exc:
            raise ContentError(f"Question '{question_id}': {exc}") from None
        if tier is not None and question_tier != tier:
            raise ContentError(f"Question '{question_id}' is tagged '{question_tier.slug}' inside '{tier.slug}' content.")

    return Question(
        id=question_id,
        prompt=prompt,
        options=options,
        correct_key=str(_field(raw, "correct_key", "")).strip().lower(),
        tier=question_tier,
    )


def questions_from_payload(raw: object) -> list[Question]:
    """Parse one content payload: a tier document or a bare list of questions."""
    if isinstance(raw, list):
        return [question_from_dict(_as_dict(item)) for item in raw]
    if not isinstance(raw, dict):
        raise ContentError("Question content root must be a JSON object or list.")
    try:
        tier = Tier.parse(raw["tier"]) if "tier" in raw else None
    except ValueError as exc:
        raise ContentError(str(exc)) from None
    items = raw.get("questions", [])
    if not isinstance(items, list):
        raise ContentError("'questions' must be a list.")
    return [question_from_dict(_as_dict(item), tier) for item in items]


def load_questions() -> dict[Tier, list[Question]]:
    """Load the bundled question bank grouped by tier."""
    questions: list[Question] = []
    for entry in sorted(resources.files(CONTENT_PACKAGE).iterdir(), key=lambda item: item.name):
        if entry.name.endswith(".json"):
            questions.extend(questions_from_payload(json.loads(entry.read_text(encoding="utf-8-sig"))))
    return _group_by_tier(questions)


def load_questions_from_dir(path: Path) -> dict[Tier, list[Question]]:
    """Load a question bank from a directory for tests/tools."""
    questions: list[Question] = []
    for file_path in sorted(path.glob("*.json")):
        questions.extend(questions_from_payload(json.loads(file_path.read_text(encoding="utf-8-sig"))))
    return _group_by_tier(questions)


def load_questions_from_file(path: Path | str) -> list[Question]:
    """Load questions from one JSON file."""
    questions = questions_from_payload(json.loads(Path(path).read_text(encoding="utf-8-sig")))
    _validate_unique_question_ids(questions)
    return questions


def _group_by_tier(questions: list[Question]) -> dict[Tier, list[Question]]:
    _validate_unique_question_ids(questions)
    grouped: dict[Tier, list[Question]] = {tier: [] for tier in Tier}
    for question in questions:
        grouped[question.tier].append(question)
    return grouped


def _validate_unique_question_ids(questions: list[Question]) -> None:
    """Validate that question IDs are unique across the whole bank."""
    seen: dict[str, Tier] = {}
    for question in questions:
        previous = seen.get(question.id)
        if previous is not None:
            raise ContentError(f"Duplicate question id: {question.id} (in {previous.slug} and {question.tier.slug})")
        seen[question.id] = question.tier


def _field(raw: dict[str, Any], name: str, default: object) -> object:
    if name in raw:
        return raw[name]
    legacy = _LEGACY_FIELDS.get(name)
    if legacy is not None and legacy in raw:
        return raw[legacy]
    return default


def _as_dict(item: object) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise ContentError("Each question must be a JSON object.")
    return item
