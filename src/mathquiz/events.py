"""In-process change notifications for persisted progress."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

PROGRESS_CHANGED = "progress_changed"

Handler = Callable[[Any], None]


class ProgressEvents:
    """Tiny pub/sub bus; the reconciler publishes after each progress upsert."""

    def __init__(self) -> None:
        self._subs: dict[str, list[Handler]] = {}

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it again."""
        self._subs.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subs.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: str, payload: Any) -> None:
        for handler in list(self._subs.get(event, [])):
            try:
                handler(payload)
            except Exception:
                logger.warning("Subscriber for %s failed", event, exc_info=True)
