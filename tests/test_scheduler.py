import asyncio
import logging

import pytest

from covermeta.core.scheduler import PriorityScheduler
from covermeta.core.visibility import VisibilityTracker
from covermeta.errors import HostDisconnectedError


class _Card:
    def __init__(self, n: int) -> None:
        self.n = n

    def __repr__(self) -> str:
        return f"<card {self.n}>"


def _observed_cards(visibility: VisibilityTracker, count: int):
    cards = [_Card(i) for i in range(1, count + 1)]
    for card in cards:
        visibility.observe(card)
    return cards


def test_scheduler_rejects_bad_limits() -> None:
    with pytest.raises(ValueError):
        PriorityScheduler(VisibilityTracker(), max_concurrent=0)
    with pytest.raises(ValueError):
        PriorityScheduler(VisibilityTracker(), stagger_s=-1)


def test_scheduler_never_exceeds_max_concurrent() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=3, stagger_s=0)
        active = 0
        peak = 0

        async def work():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for card in _observed_cards(visibility, 25):
            assert scheduler.enqueue(card, work)
        await scheduler.join()
        return peak, scheduler.stats.snapshot()

    peak, snap = asyncio.run(run_test())
    assert peak == 3
    assert snap.peak_active == 3
    assert snap.completed == 25
    assert snap.dispatched == 25


def test_scheduler_dispatches_visible_before_background() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0)
        started = []

        def make(n):
            async def work():
                started.append(n)
                await asyncio.sleep(0)
            return work

        cards = _observed_cards(visibility, 4)
        for card in cards[:3]:
            scheduler.enqueue(card, make(card.n))
        visibility.report(cards[3], 1.0)
        scheduler.enqueue(cards[3], make(cards[3].n))
        assert scheduler.queue_stats() == {"active": 1, "visible": 1, "background": 2}

        await scheduler.join()
        return started

    assert asyncio.run(run_test()) == [1, 4, 2, 3]


def test_scheduler_promotes_card_that_scrolls_into_view() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=10, stagger_s=0)
        gate = asyncio.Event()
        started = []

        def make(n):
            async def work():
                started.append(n)
                await gate.wait()
            return work

        cards = _observed_cards(visibility, 15)
        for card in cards:
            scheduler.enqueue(card, make(card.n))
        await asyncio.sleep(0)
        assert started == list(range(1, 11))
        assert scheduler.queue_stats() == {"active": 10, "visible": 0, "background": 5}

        assert visibility.report(cards[11], 0.5)
        assert scheduler.queue_stats() == {"active": 10, "visible": 1, "background": 4}

        gate.set()
        await scheduler.join()
        return started, scheduler.stats.snapshot()

    started, snap = asyncio.run(run_test())
    assert started[10:] == [12, 11, 13, 14, 15]
    assert snap.reprioritized == 1


def test_scheduler_reprioritize_keeps_relative_order() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0)
        gate = asyncio.Event()
        started = []

        def make(n):
            async def work():
                started.append(n)
                await gate.wait()
            return work

        cards = _observed_cards(visibility, 6)
        for card in cards:
            scheduler.enqueue(card, make(card.n))
        # both become visible before a single pass
        visibility.set_on_visible(None)
        visibility.report(cards[4], 1.0)
        visibility.report(cards[2], 1.0)
        scheduler.reprioritize()

        gate.set()
        await scheduler.join()
        return started

    assert asyncio.run(run_test()) == [1, 3, 5, 2, 4, 6]


def test_scheduler_failed_task_frees_its_slot(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="covermeta.core.scheduler")

    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0)
        ran = []

        async def boom():
            raise RuntimeError("boom")

        async def gone():
            raise HostDisconnectedError()

        async def ok():
            ran.append("ok")

        cards = _observed_cards(visibility, 3)
        scheduler.enqueue(cards[0], boom)
        scheduler.enqueue(cards[1], gone)
        scheduler.enqueue(cards[2], ok)
        await scheduler.join()
        return ran, scheduler

    ran, scheduler = asyncio.run(run_test())
    assert ran == ["ok"]
    assert scheduler.active_count == 0
    snap = scheduler.stats.snapshot()
    assert snap.failed == 2
    assert snap.completed == 1

    errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert len(errors) == 1
    assert "boom" in errors[0].getMessage()


def test_scheduler_refuses_duplicate_enqueue_until_finished() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0)
        card = _observed_cards(visibility, 1)[0]

        async def work():
            await asyncio.sleep(0)

        first = scheduler.enqueue(card, work)
        second = scheduler.enqueue(card, work)
        pending = scheduler.is_pending(card)
        await scheduler.join()
        third = scheduler.enqueue(card, work)
        await scheduler.join()
        return first, second, pending, third, scheduler.stats.snapshot()

    first, second, pending, third, snap = asyncio.run(run_test())
    assert (first, second, pending, third) == (True, False, True, True)
    assert snap.completed == 2


def test_scheduler_start_batch_arms_staggered_attempts() -> None:
    async def run_test():
        scheduler = PriorityScheduler(VisibilityTracker(), max_concurrent=3, stagger_s=0.01)
        scheduler.start_batch()
        armed = len(scheduler._timers)
        await asyncio.sleep(0.05)
        return armed, len(scheduler._timers)

    assert asyncio.run(run_test()) == (3, 0)


def test_scheduler_close_drops_queue_and_lets_running_finish() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0)
        gate = asyncio.Event()

        async def work():
            await gate.wait()

        cards = _observed_cards(visibility, 3)
        for card in cards:
            scheduler.enqueue(card, work)
        await asyncio.sleep(0)

        scheduler.close()
        accepted = scheduler.enqueue(_Card(99), work)
        queued = scheduler.queue_stats()
        gate.set()
        await scheduler.join()
        return accepted, queued, scheduler

    accepted, queued, scheduler = asyncio.run(run_test())
    assert accepted is False
    assert queued == {"active": 1, "visible": 0, "background": 0}
    assert scheduler.closed
    assert scheduler.is_idle()
    assert scheduler.stats.snapshot().completed == 1


def test_scheduler_clear_queues_reports_dropped_count() -> None:
    async def run_test():
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0)
        gate = asyncio.Event()

        async def work():
            await gate.wait()

        cards = _observed_cards(visibility, 4)
        for card in cards:
            scheduler.enqueue(card, work)
        dropped = scheduler.clear_queues()
        requeued = scheduler.enqueue(cards[2], work)
        gate.set()
        await scheduler.join()
        return dropped, requeued

    assert asyncio.run(run_test()) == (3, True)


def test_scheduler_join_returns_immediately_when_idle() -> None:
    async def run_test():
        scheduler = PriorityScheduler(VisibilityTracker())
        await asyncio.wait_for(scheduler.join(), timeout=1)
        return scheduler.is_idle()

    assert asyncio.run(run_test())


def test_scheduler_refills_freed_slot_after_stagger() -> None:
    async def run_test():
        loop = asyncio.get_running_loop()
        visibility = VisibilityTracker()
        scheduler = PriorityScheduler(visibility, max_concurrent=1, stagger_s=0.05)
        times = {}

        async def first():
            await asyncio.sleep(0)
            times["first_done"] = loop.time()

        async def second():
            times["second_start"] = loop.time()

        cards = _observed_cards(visibility, 2)
        scheduler.enqueue(cards[0], first)
        scheduler.enqueue(cards[1], second)

        await asyncio.sleep(0.02)
        early = ("first_done" in times, "second_start" in times)
        await scheduler.join()
        return early, times

    early, times = asyncio.run(run_test())
    assert early == (True, False)
    assert times["second_start"] - times["first_done"] >= 0.045
