"""Restart-target aggregation across concurrent site reconciliations."""
from __future__ import annotations

import threading
from collections.abc import Iterable


class RestartAggregator:
    """Thread-safe, deduplicating set of runtimes needing a restart.

    Sites sharing a runtime all report the same target, so one drained set
    yields exactly one restart per runtime however many of its sites changed.
    """

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._targets: set[str] = set(initial)

    def mark_dirty(self, target: str) -> None:
        """Record that *target* must restart."""
        with self._lock:
            self._targets.add(target)

    def pending(self) -> frozenset[str]:
        """Return the current targets without clearing them."""
        with self._lock:
            return frozenset(self._targets)

    def drain(self) -> frozenset[str]:
        """Return and clear the accumulated targets."""
        with self._lock:
            drained = frozenset(self._targets)
            self._targets.clear()
        return drained

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)


__all__ = ["RestartAggregator"]
