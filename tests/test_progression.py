import random
import threading
from datetime import UTC, datetime
from pathlib import Path

from mathquiz.engine import SessionEngine
from mathquiz.errors import PersistenceUnavailable
from mathquiz.events import PROGRESS_CHANGED, ProgressEvents
from mathquiz.models import HIGHEST_TIER, Identity, ReconcileOutcome, Results, Tier
from mathquiz.progress import ProgressStore
from mathquiz.progression import ProgressionReconciler, compute_new_max_tier, replay_pending
from mathquiz.question_bank import QuestionBank
from mathquiz.sync_queue import SyncQueue


def _results(tier: Tier, correct: int, score: int | None = None) -> Results:
    return Results(
        score=score if score is not None else correct * tier.rules.base_points,
        correct_answers=correct,
        total_questions=5,
        accuracy=correct * 20.0,
        time_spent=50,
        tier=tier,
    )


def test_unlock_rule_table() -> None:
    assert compute_new_max_tier(Tier.FACIL, 3, Tier.FACIL) is Tier.MEDIO
    assert compute_new_max_tier(Tier.FACIL, 2, Tier.FACIL) is Tier.FACIL
    assert compute_new_max_tier(Tier.FACIL, 5, Tier.DIFICIL) is Tier.DIFICIL
    assert compute_new_max_tier(Tier.EXPERT, 5, Tier.EXPERT) is Tier.EXPERT
    assert compute_new_max_tier(Tier.MEDIO, 4, Tier.MEDIO, threshold=5) is Tier.MEDIO


def test_unlock_rule_is_monotonic_over_random_sequences() -> None:
    rng = random.Random(42)
    for _ in range(200):
        current = Tier.FACIL
        for _ in range(10):
            tier = Tier(rng.randint(1, int(current)))
            correct = rng.randint(0, 5)
            new = compute_new_max_tier(tier, correct, current)
            assert current <= new <= HIGHEST_TIER
            if new > current:
                assert correct >= 3 and tier >= current
            current = new


def test_reconcile_first_session_unlocks_next_tier() -> None:
    store = ProgressStore(":memory:")
    reconciler = ProgressionReconciler(store)
    outcome = reconciler.reconcile(1, _results(Tier.FACIL, 3, score=45))
    assert outcome == ReconcileOutcome(previous_max_tier=Tier.FACIL, new_max_tier=Tier.MEDIO, unlocked_new_tier=True)

    progress = store.get_progress(1)
    assert progress is not None
    assert (progress.max_tier, progress.total_correct, progress.total_points) == (Tier.MEDIO, 3, 45)
    [row] = store.list_phase_results(1)
    assert (row.tier, row.correct_answers, row.points_earned, row.total_questions) == (Tier.FACIL, 3, 45, 5)


def test_two_correct_does_not_unlock() -> None:
    store = ProgressStore(":memory:")
    outcome = ProgressionReconciler(store).reconcile(1, _results(Tier.FACIL, 2))
    assert outcome.unlocked_new_tier is False
    assert outcome.new_max_tier is Tier.FACIL
    progress = store.get_progress(1)
    assert progress is not None and progress.max_tier is Tier.FACIL


def test_replaying_lower_tier_keeps_max_and_adds_totals() -> None:
    store = ProgressStore(":memory:")
    reconciler = ProgressionReconciler(store)
    reconciler.reconcile(1, _results(Tier.FACIL, 5))
    reconciler.reconcile(1, _results(Tier.MEDIO, 4))
    outcome = reconciler.reconcile(1, _results(Tier.FACIL, 5))
    assert outcome.unlocked_new_tier is False
    assert outcome.new_max_tier is Tier.DIFICIL
    progress = store.get_progress(1)
    assert progress is not None
    assert progress.total_correct == 14
    assert len(store.list_phase_results(1)) == 3


def test_custom_threshold_and_fixed_clock() -> None:
    store = ProgressStore(":memory:")
    stamp = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
    reconciler = ProgressionReconciler(store, unlock_threshold=5, clock=lambda: stamp)
    assert reconciler.reconcile(1, _results(Tier.FACIL, 4)).unlocked_new_tier is False
    assert reconciler.reconcile(1, _results(Tier.FACIL, 5)).unlocked_new_tier is True
    assert store.list_phase_results(1)[0].completed_at == stamp.isoformat()


def _broken_subscriber(user_id: int) -> None:
    raise RuntimeError(f"subscriber failed for {user_id}")


def test_reconcile_publishes_progress_changed() -> None:
    store = ProgressStore(":memory:")
    events = ProgressEvents()
    seen: list[int] = []
    events.subscribe(PROGRESS_CHANGED, seen.append)
    events.subscribe(PROGRESS_CHANGED, _broken_subscriber)

    outcome = ProgressionReconciler(store, events=events).reconcile(9, _results(Tier.FACIL, 1))
    assert outcome.new_max_tier is Tier.FACIL
    assert seen == [9]


def test_unsubscribe_stops_delivery() -> None:
    events = ProgressEvents()
    seen: list[int] = []
    unsubscribe = events.subscribe(PROGRESS_CHANGED, seen.append)
    events.emit(PROGRESS_CHANGED, 1)
    unsubscribe()
    events.emit(PROGRESS_CHANGED, 2)
    assert seen == [1]


class FlakyReconciler:
    def __init__(self, fail_after: int) -> None:
        self.fail_after = fail_after
        self.synced: list[tuple[int, Results]] = []

    def reconcile(self, user_id: int, results: Results, completed_at: datetime | None = None) -> None:
        if len(self.synced) >= self.fail_after:
            raise PersistenceUnavailable("offline")
        self.synced.append((user_id, results))


def test_replay_pending_syncs_everything_and_empties_queue(tmp_path: Path) -> None:
    queue = SyncQueue(tmp_path / "queue.jsonl")
    queue.append(1, _results(Tier.FACIL, 3))
    queue.append(2, _results(Tier.MEDIO, 1))
    store = ProgressStore(":memory:")

    assert replay_pending(queue, ProgressionReconciler(store)) == 2
    assert queue.pending() == []
    progress = store.get_progress(1)
    assert progress is not None and progress.max_tier is Tier.MEDIO
    assert store.get_progress(2) is not None


def test_replay_pending_stops_at_first_failure(tmp_path: Path) -> None:
    queue = SyncQueue(tmp_path / "queue.jsonl")
    for correct in (1, 2, 3):
        queue.append(1, _results(Tier.FACIL, correct))
    reconciler = FlakyReconciler(fail_after=1)

    assert replay_pending(queue, reconciler) == 1  # type: ignore[arg-type]
    remaining = queue.pending()
    assert [entry.results.correct_answers for entry in remaining] == [2, 3]

    reconciler.fail_after = 10
    assert replay_pending(queue, reconciler) == 2  # type: ignore[arg-type]
    assert [results.correct_answers for _, results in reconciler.synced] == [1, 2, 3]
    assert len(queue) == 0


def test_replay_keeps_queued_completion_time(tmp_path: Path) -> None:
    queue = SyncQueue(tmp_path / "queue.jsonl")
    entry = queue.append(1, _results(Tier.FACIL, 3))
    store = ProgressStore(":memory:")
    replay_pending(queue, ProgressionReconciler(store))
    [row] = store.list_phase_results(1)
    assert datetime.fromisoformat(row.completed_at) == entry.timestamp


def test_two_connections_on_one_file_aggregate_progress(tmp_path: Path) -> None:
    path = tmp_path / "progress.db"
    first = ProgressStore(path)
    second = ProgressStore(path)
    try:
        assert ProgressionReconciler(first).reconcile(1, _results(Tier.FACIL, 3)).unlocked_new_tier is True
        outcome = ProgressionReconciler(second).reconcile(1, _results(Tier.FACIL, 3))
        assert outcome == ReconcileOutcome(previous_max_tier=Tier.MEDIO, new_max_tier=Tier.MEDIO, unlocked_new_tier=False)

        progress = first.get_progress(1)
        assert progress is not None
        assert (progress.max_tier, progress.total_correct, progress.total_points) == (Tier.MEDIO, 6, 60)
        assert len(second.list_phase_results(1)) == 2
    finally:
        first.close()
        second.close()


def test_concurrent_reconciles_never_lose_updates(tmp_path: Path) -> None:
    path = tmp_path / "progress.db"
    ProgressStore(path).close()
    failures: list[BaseException] = []

    def _worker() -> None:
        store = ProgressStore(path, lock_timeout=30.0)
        try:
            reconciler = ProgressionReconciler(store)
            for _ in range(5):
                reconciler.reconcile(1, _results(Tier.FACIL, 3))
        except PersistenceUnavailable as exc:
            failures.append(exc)
        finally:
            store.close()

    workers = [threading.Thread(target=_worker) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert failures == []
    store = ProgressStore(path)
    try:
        progress = store.get_progress(1)
        assert progress is not None
        assert (progress.max_tier, progress.total_correct, progress.total_points) == (Tier.MEDIO, 30, 300)
        assert len(store.list_phase_results(1, limit=20)) == 10
    finally:
        store.close()


def test_held_write_lock_makes_finish_queue_results(make_question, clock, tmp_path: Path) -> None:
    path = tmp_path / "progress.db"
    holder = ProgressStore(path)
    blocked = ProgressStore(path, lock_timeout=0.05)
    holder.import_questions([make_question("q0")])
    queue = SyncQueue(tmp_path / "queue.jsonl")
    bank = QuestionBank(source=blocked, fallback={tier: [] for tier in Tier}, rng=random.Random(0))
    engine = SessionEngine(
        bank,
        lambda: Identity(user_id=1, name="ana"),
        reconciler=ProgressionReconciler(blocked, clock=clock),
        queue=queue,
        clock=clock,
    )
    engine.start(Tier.FACIL, 1)
    engine.submit_answer("a")

    try:
        with holder.reconcile_transaction():
            try:
                ProgressionReconciler(blocked).reconcile(1, _results(Tier.FACIL, 3))
                raise AssertionError("Expected PersistenceUnavailable")
            except PersistenceUnavailable:
                pass
            finished = engine.finish()

        assert finished is not None
        assert finished.queued is True
        assert finished.progression is None
        assert finished.results.score == 16
        assert blocked.get_progress(1) is None
        [entry] = queue.pending()
        assert entry.user_id == 1

        assert replay_pending(queue, ProgressionReconciler(blocked)) == 1
        progress = holder.get_progress(1)
        assert progress is not None and progress.total_points == 16
    finally:
        holder.close()
        blocked.close()
