from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from covermeta.core.models import CardHandle, QueueItem, Task
from covermeta.core.stats_tracker import StatsTracker
from covermeta.core.visibility import VisibilityTracker
from covermeta.errors import is_host_disconnect

logger = logging.getLogger(__name__)

MAX_CONCURRENT = 10
STAGGER_S = 0.05


class PriorityScheduler:
    """
    Bounded-concurrency dispatcher that prefers visible cards.

    Two FIFO queues: visible and background. Each dispatch decision takes the
    head of the visible queue, falling back to the background queue, and never
    runs more than `max_concurrent` tasks at once. A finished task frees its
    slot and schedules the next dispatch attempt `stagger_s` later, so bursts of
    completions refill gradually.

    Visibility only affects queue order: running tasks are never preempted or
    cancelled, and queued visible items are not demoted when their card scrolls
    away. All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        visibility: VisibilityTracker,
        *,
        max_concurrent: int = MAX_CONCURRENT,
        stagger_s: float = STAGGER_S,
        stats: Optional[StatsTracker] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if stagger_s < 0:
            raise ValueError("stagger_s must be >= 0")
        self.visibility = visibility
        self.max_concurrent = int(max_concurrent)
        self.stagger_s = float(stagger_s)
        self.stats = stats if stats is not None else StatsTracker()

        self.visible_queue: Deque[QueueItem] = deque()
        self.background_queue: Deque[QueueItem] = deque()
        self.active_count = 0

        self._claimed: Set[int] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._running: Set[asyncio.Task] = set()
        self._idle_waiters: List[asyncio.Future] = []
        self._closed = False

        visibility.set_on_visible(self.reprioritize)

    # -----------------------------
    # Queueing
    # -----------------------------
    def enqueue(self, card: CardHandle, task: Task) -> bool:
        """Queue `task` for `card`. Returns False if the card is already queued or running."""
        if self._closed:
            logger.debug("enqueue ignored: scheduler closed")
            return False
        if id(card) in self._claimed:
            logger.warning("card already queued or running; ignoring duplicate enqueue")
            return False
        self._claimed.add(id(card))
        item = QueueItem(card=card, task=task)
        if self.visibility.is_visible(card):
            self.visible_queue.append(item)
        else:
            self.background_queue.append(item)
        self.stats.inc_enqueued()
        self.attempt_dispatch()
        return True

    def reprioritize(self) -> None:
        """Move background items whose card is now visible to the visible tail, keeping order."""
        moved = 0
        still_background: Deque[QueueItem] = deque()
        for item in self.background_queue:
            if self.visibility.is_visible(item.card):
                self.visible_queue.append(item)
                moved += 1
            else:
                still_background.append(item)
        self.background_queue = still_background
        if moved:
            self.stats.inc_reprioritized(moved)
            logger.debug(
                "reprioritized | moved=%s | visible=%s | background=%s",
                moved,
                len(self.visible_queue),
                len(self.background_queue),
            )
        self.attempt_dispatch()

    # -----------------------------
    # Dispatch
    # -----------------------------
    def attempt_dispatch(self) -> bool:
        if self._closed or self.active_count >= self.max_concurrent:
            return False
        if self.visible_queue:
            item = self.visible_queue.popleft()
        elif self.background_queue:
            item = self.background_queue.popleft()
        else:
            return False

        self.active_count += 1
        self.stats.inc_dispatched(self.active_count)
        logger.debug(
            "dispatch | active=%s/%s | visible=%s | background=%s",
            self.active_count,
            self.max_concurrent,
            len(self.visible_queue),
            len(self.background_queue),
        )
        task = asyncio.get_running_loop().create_task(self._run(item))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return True

    async def _run(self, item: QueueItem) -> None:
        try:
            await item.task()
        except Exception as e:
            self.stats.inc_failed()
            if is_host_disconnect(e):
                logger.debug("task skipped: host disconnected")
            else:
                logger.error("task failed -> %r", e)
        else:
            self.stats.inc_completed()
        finally:
            self.active_count -= 1
            self._claimed.discard(id(item.card))
            self._schedule_dispatch(self.stagger_s)
            self._notify_if_idle()

    def _schedule_dispatch(self, delay_s: float) -> None:
        if self._closed:
            return
        handle: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            self._timers.discard(handle)
            self.attempt_dispatch()

        handle = asyncio.get_running_loop().call_later(delay_s, _fire)
        self._timers.add(handle)

    def start_batch(self) -> None:
        """Prime the pipeline with max_concurrent attempts spaced stagger_s apart."""
        logger.debug(
            "batch start | visible=%s | background=%s",
            len(self.visible_queue),
            len(self.background_queue),
        )
        for i in range(self.max_concurrent):
            self._schedule_dispatch(i * self.stagger_s)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def is_idle(self) -> bool:
        return self.active_count == 0 and not self.visible_queue and not self.background_queue

    def _notify_if_idle(self) -> None:
        if not self.is_idle():
            return
        waiters, self._idle_waiters = self._idle_waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(None)

    async def join(self) -> None:
        """Wait until both queues are drained and no task is running."""
        if self.is_idle():
            return
        fut = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(fut)
        await fut

    def clear_queues(self) -> int:
        dropped = len(self.visible_queue) + len(self.background_queue)
        for item in list(self.visible_queue) + list(self.background_queue):
            self._claimed.discard(id(item.card))
        self.visible_queue.clear()
        self.background_queue.clear()
        logger.debug("queues cleared | dropped=%s", dropped)
        self._notify_if_idle()
        return dropped

    def close(self) -> None:
        """Stop dispatching: cancel stagger timers and drop queued work. Running tasks finish."""
        if self._closed:
            return
        self.clear_queues()
        self._closed = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_pending(self, card: CardHandle) -> bool:
        return id(card) in self._claimed

    def queue_stats(self) -> Dict[str, int]:
        return {
            "active": self.active_count,
            "visible": len(self.visible_queue),
            "background": len(self.background_queue),
        }
