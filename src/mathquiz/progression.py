"""Tier unlock rule and persistence of finished sessions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from .errors import PersistenceUnavailable
from .events import PROGRESS_CHANGED, ProgressEvents
from .models import HIGHEST_TIER, LOWEST_TIER, ReconcileOutcome, Results, Tier
from .progress import ProgressStore
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

DEFAULT_UNLOCK_THRESHOLD = 3


def compute_new_max_tier(
    tier: Tier, correct_answers: int, current_max: Tier, threshold: int = DEFAULT_UNLOCK_THRESHOLD
) -> Tier:
    """Return the highest unlocked tier after finishing a session at `tier`.

    Replaying a lower tier never unlocks anything, and the result never drops
    below `current_max` nor rises above the highest tier.
    """
    if correct_answers >= threshold and tier >= current_max:
        return Tier(min(int(tier) + 1, int(HIGHEST_TIER)))
    return current_max


class ProgressionReconciler:
    """Merge finished results into stored progress inside one transaction."""

    def __init__(
        self,
        store: ProgressStore,
        *,
        events: ProgressEvents | None = None,
        unlock_threshold: int = DEFAULT_UNLOCK_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._threshold = unlock_threshold
        self._clock = clock or (lambda: datetime.now(UTC))

    def reconcile(self, user_id: int, results: Results, completed_at: datetime | None = None) -> ReconcileOutcome:
        """Append history, recompute `max_tier` and upsert progress for one user."""
        timestamp = (completed_at or self._clock()).isoformat()
        with self._store.reconcile_transaction() as tx:
            tx.append_phase_result(user_id, results, timestamp)
            current = tx.get_progress(user_id)
            current_max = current.max_tier if current is not None else LOWEST_TIER
            new_max = compute_new_max_tier(results.tier, results.correct_answers, current_max, self._threshold)
            tx.upsert_progress(user_id, new_max, results.correct_answers, results.score, timestamp)

        outcome = ReconcileOutcome(
            previous_max_tier=current_max,
            new_max_tier=new_max,
            unlocked_new_tier=new_max > current_max,
        )
        if outcome.unlocked_new_tier:
            logger.info("User %s unlocked tier %s", user_id, new_max.slug)
        if self._events is not None:
            self._events.emit(PROGRESS_CHANGED, user_id)
        return outcome


def replay_pending(queue: SyncQueue, reconciler: ProgressionReconciler) -> int:
    """Reconcile queued results in order; stop at the first store failure.

    Entries that were reconciled are removed from the queue file. Returns the
    number of entries synced by this call.
    """
    synced: set[str] = set()
    for entry in queue.pending():
        try:
            reconciler.reconcile(entry.user_id, entry.results.to_results(), completed_at=entry.timestamp)
        except PersistenceUnavailable:
            logger.warning("Store still unavailable; %d queued result(s) left", len(queue.pending()) - len(synced))
            break
        synced.add(entry.entry_id)
    if synced:
        queue.compact(synced)
        logger.info("Synced %d queued result(s)", len(synced))
    return len(synced)
