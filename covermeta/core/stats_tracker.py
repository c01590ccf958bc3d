from __future__ import annotations

from typing import Dict, Optional

from covermeta.core.models import StatsSnapshot


class StatsTracker:
    """
    Counters for one page session.

    Rule: only touched from the event loop thread, so no locking.
    Call snapshot() for a consistent StatsSnapshot for logging.
    """

    def __init__(self) -> None:
        self._enqueued = 0
        self._dispatched = 0
        self._completed = 0
        self._failed = 0
        self._peak_active = 0
        self._reprioritized = 0
        self._cache_hits = 0
        self._cache_misses = 0

    def inc_enqueued(self, n: int = 1) -> None:
        self._enqueued += int(n)

    def inc_dispatched(self, active: int) -> None:
        self._dispatched += 1
        self._peak_active = max(self._peak_active, int(active))

    def inc_completed(self, n: int = 1) -> None:
        self._completed += int(n)

    def inc_failed(self, n: int = 1) -> None:
        self._failed += int(n)

    def inc_reprioritized(self, n: int = 1) -> None:
        self._reprioritized += int(n)

    def inc_cache_hits(self, n: int = 1) -> None:
        self._cache_hits += int(n)

    def inc_cache_misses(self, n: int = 1) -> None:
        self._cache_misses += int(n)

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            enqueued=self._enqueued,
            dispatched=self._dispatched,
            completed=self._completed,
            failed=self._failed,
            peak_active=self._peak_active,
            reprioritized=self._reprioritized,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
        )

    def snapshot_dict(self, *, active: Optional[int] = None) -> Dict[str, int]:
        snap = self.snapshot()
        out = {
            "enqueued": snap.enqueued,
            "dispatched": snap.dispatched,
            "completed": snap.completed,
            "failed": snap.failed,
            "peak_active": snap.peak_active,
            "reprioritized": snap.reprioritized,
            "cache_hits": snap.cache_hits,
            "cache_misses": snap.cache_misses,
        }
        if active is not None:
            out["active"] = int(active)
        return out
