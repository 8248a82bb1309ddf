import random

from mathquiz.errors import PersistenceUnavailable
from mathquiz.models import Question, Tier
from mathquiz.question_bank import QuestionBank


class StaticSource:
    def __init__(self, rows: list[Question]) -> None:
        self.rows = rows
        self.calls: list[Tier] = []

    def questions_for_tier(self, tier: Tier) -> list[Question]:
        self.calls.append(tier)
        return list(self.rows)


class DownSource:
    def questions_for_tier(self, tier: Tier) -> list[Question]:
        raise PersistenceUnavailable("connection refused")


def _fallback(make_question) -> dict[Tier, list[Question]]:
    return {
        Tier.FACIL: [make_question(f"fb{i}") for i in range(8)],
        Tier.MEDIO: [],
        Tier.DIFICIL: [],
        Tier.EXPERT: [],
    }


def test_fetch_returns_count_distinct_questions_of_tier(make_question) -> None:
    rows = [make_question(f"q{i}") for i in range(20)]
    bank = QuestionBank(source=StaticSource(rows), fallback={}, rng=random.Random(7))

    for _ in range(25):
        batch = bank.fetch_questions(Tier.FACIL, 5)
        assert len(batch) == 5
        assert len({question.id for question in batch}) == 5
        assert all(question.tier is Tier.FACIL for question in batch)


def test_fetch_order_depends_on_rng(make_question) -> None:
    rows = [make_question(f"q{i}") for i in range(20)]
    first = QuestionBank(source=StaticSource(rows), rng=random.Random(1)).fetch_questions(Tier.FACIL, 20)
    again = QuestionBank(source=StaticSource(rows), rng=random.Random(1)).fetch_questions(Tier.FACIL, 20)
    assert [q.id for q in first] == [q.id for q in again]
    assert sorted(q.id for q in first) == sorted(q.id for q in rows)


def test_fetch_dedupes_and_drops_other_tiers(make_question) -> None:
    rows = [
        make_question("a"),
        make_question("a", correct_key="b"),
        make_question("b"),
        make_question("m", tier=Tier.MEDIO),
    ]
    batch = QuestionBank(source=StaticSource(rows), rng=random.Random(3)).fetch_questions(Tier.FACIL, 5)
    assert sorted(q.id for q in batch) == ["a", "b"]
    assert next(q for q in batch if q.id == "a").correct_key == "a"


def test_store_error_uses_fallback_set(make_question) -> None:
    bank = QuestionBank(source=DownSource(), fallback=_fallback(make_question), rng=random.Random(5))
    batch = bank.fetch_questions(Tier.FACIL, 5)
    assert len(batch) == 5
    assert len({q.id for q in batch}) == 5
    assert all(q.id.startswith("fb") for q in batch)


def test_empty_store_uses_fallback_set(make_question) -> None:
    bank = QuestionBank(source=StaticSource([]), fallback=_fallback(make_question), rng=random.Random(5))
    batch = bank.fetch_questions(Tier.FACIL, 3)
    assert len(batch) == 3
    assert all(q.id.startswith("fb") for q in batch)


def test_both_empty_returns_empty_list(make_question) -> None:
    bank = QuestionBank(source=StaticSource([]), fallback=_fallback(make_question))
    assert bank.fetch_questions(Tier.EXPERT, 5) == []


def test_non_positive_count_returns_empty_without_querying(make_question) -> None:
    source = StaticSource([make_question("a")])
    bank = QuestionBank(source=source)
    assert bank.fetch_questions(Tier.FACIL, 0) == []
    assert source.calls == []


def test_short_tier_returns_everything_available(make_question) -> None:
    rows = [make_question(f"q{i}") for i in range(3)]
    assert len(QuestionBank(source=StaticSource(rows)).fetch_questions(Tier.FACIL, 5)) == 3


def test_without_source_uses_bundled_questions() -> None:
    batch = QuestionBank(rng=random.Random(11)).fetch_questions(Tier.MEDIO, 5)
    assert len(batch) == 5
    assert all(q.tier is Tier.MEDIO for q in batch)
