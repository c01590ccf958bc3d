import asyncio

from covermeta.core.cache import MetadataCache
from covermeta.core.card_state import FLAG_PROCESSED, CardStateTracker, InMemoryMarker
from covermeta.core.models import BookQuery, MetadataRecord, MutationRecord
from covermeta.core.scheduler import PriorityScheduler
from covermeta.core.store import MemoryStore
from covermeta.core.visibility import VisibilityTracker
from covermeta.orchestrator import Orchestrator

DUNE = MetadataRecord(average_rating=4.27, ratings_count=1_523_411)


class _Card:
    def __init__(self, title, author=None) -> None:
        self.title = title
        self.author = author


class _Source:
    def __init__(self, cards) -> None:
        self.cards = list(cards)

    def find_unprocessed_cards(self):
        return list(self.cards)

    def extract_query(self, card):
        if card.title is None:
            return None
        return BookQuery(card.title, card.author)


class _Renderer:
    def __init__(self) -> None:
        self.events = []

    def show_loading(self, card) -> None:
        self.events.append(("loading", card.title))

    def show_metadata(self, card, record, query) -> None:
        self.events.append(("metadata", card.title))

    def clear(self, card) -> None:
        self.events.append(("clear", card.title))


class _CountingMarker(InMemoryMarker):
    def __init__(self) -> None:
        super().__init__()
        self.processed_marks = 0

    def set_flag(self, card, flag) -> None:
        if flag == FLAG_PROCESSED:
            self.processed_marks += 1
        super().set_flag(card, flag)


def _build(cards, fetcher, *, cache=None, visible=(), max_concurrent=10, marker=None):
    visibility = VisibilityTracker(probe=lambda c: 1.0 if any(c is v for v in visible) else 0.0)
    return Orchestrator(
        source=_Source(cards),
        renderer=_Renderer(),
        fetcher=fetcher,
        cache=cache if cache is not None else MetadataCache(MemoryStore()),
        states=CardStateTracker(marker),
        visibility=visibility,
        scheduler=PriorityScheduler(visibility, max_concurrent=max_concurrent, stagger_s=0),
        debounce_s=0.01,
    )


async def _never(query):
    raise AssertionError("should not fetch on a cache hit")


def test_cache_hit_renders_without_fetch() -> None:
    card = _Card("Dune", "Frank Herbert")
    cache = MetadataCache(MemoryStore())
    cache.set(BookQuery("Dune", "Frank Herbert"), DUNE)

    async def run_test():
        orch = _build([card], _never, cache=cache)
        assert orch.start() == 1
        await orch.scheduler.join()
        orch.close()
        return orch

    orch = asyncio.run(run_test())
    assert orch.renderer.events == [("loading", "Dune"), ("clear", "Dune"), ("metadata", "Dune")]
    assert orch.states.is_processed(card)
    assert not orch.visibility.is_observed(card)
    snap = orch.scheduler.stats.snapshot()
    assert snap.cache_hits == 1
    assert snap.enqueued == 0


def test_cache_miss_fetches_caches_and_renders() -> None:
    card = _Card("Dune", "Frank Herbert")
    seen = []

    async def fetch(query):
        seen.append(query)
        return DUNE

    async def run_test():
        orch = _build([card], fetch)
        orch.start()
        await orch.scheduler.join()
        orch.close()
        return orch

    orch = asyncio.run(run_test())
    assert seen == [BookQuery("Dune", "Frank Herbert")]
    assert orch.cache.get(BookQuery("Dune", "Frank Herbert")) == DUNE
    assert orch.renderer.events[-1] == ("metadata", "Dune")
    assert orch.states.is_processed(card)
    assert not orch.states.is_loading(card)
    assert orch.visibility.observed_count == 0
    snap = orch.scheduler.stats.snapshot()
    assert snap.cache_misses == 1
    assert snap.completed == 1


def test_empty_result_is_not_cached_or_rendered() -> None:
    card = _Card("Unknown Book")

    async def fetch(query):
        return None

    async def run_test():
        orch = _build([card], fetch)
        orch.start()
        await orch.scheduler.join()
        return orch

    orch = asyncio.run(run_test())
    assert ("metadata", "Unknown Book") not in orch.renderer.events
    assert orch.renderer.events[-1] == ("clear", "Unknown Book")
    assert orch.cache.stats["writes"] == 0
    assert orch.states.is_processed(card)


def test_failing_fetch_still_finishes_card_once() -> None:
    card = _Card("Dune")
    marker = _CountingMarker()

    async def fetch(query):
        raise RuntimeError("network down")

    async def run_test():
        orch = _build([card], fetch, marker=marker)
        orch.start()
        await orch.scheduler.join()
        return orch

    orch = asyncio.run(run_test())
    assert orch.states.is_processed(card)
    assert not orch.states.is_loading(card)
    assert not orch.visibility.is_observed(card)
    assert orch.renderer.events[-1] == ("clear", "Dune")
    assert marker.processed_marks == 1
    assert orch.scheduler.stats.snapshot().failed == 1


def test_card_without_title_is_marked_processed() -> None:
    card = _Card(None)

    async def run_test():
        orch = _build([card], _never)
        orch.start()
        await orch.scheduler.join()
        return orch

    orch = asyncio.run(run_test())
    assert orch.states.is_processed(card)
    assert orch.renderer.events == []
    assert orch.scheduler.stats.snapshot().enqueued == 0


def test_visible_cards_are_fetched_first() -> None:
    cards = [_Card("One"), _Card("Two"), _Card("Three")]
    order = []

    async def fetch(query):
        order.append(query.title)
        await asyncio.sleep(0)
        return DUNE

    async def run_test():
        orch = _build(cards, fetch, visible=[cards[2]], max_concurrent=1)
        orch.start()
        await orch.scheduler.join()

    asyncio.run(run_test())
    assert order == ["One", "Three", "Two"]


def test_scan_skips_cards_already_loading() -> None:
    cards = [_Card("One"), _Card("Two")]

    async def run_test():
        gate = asyncio.Event()

        async def fetch(query):
            await gate.wait()
            return DUNE

        orch = _build(cards, fetch)
        first = orch.start()
        second = orch.scan()
        gate.set()
        await orch.scheduler.join()
        third = orch.scan()
        return first, second, third, orch.scheduler.stats.snapshot()

    first, second, third, snap = asyncio.run(run_test())
    assert (first, second, third) == (2, 0, 0)
    assert snap.enqueued == 2


def test_added_nodes_trigger_one_debounced_rescan() -> None:
    first = _Card("Dune")
    late = _Card("Hyperion", "Dan Simmons")

    async def fetch(query):
        return DUNE

    async def run_test():
        orch = _build([first], fetch)
        orch.start()
        await orch.scheduler.join()

        orch.source.cards.append(late)
        assert orch.on_mutations([MutationRecord(removed_nodes=2)]) is False
        for _ in range(3):
            assert orch.on_mutations([MutationRecord(added_nodes=1)]) is True
        assert orch.scans == 1

        await asyncio.sleep(0.05)
        await orch.scheduler.join()
        orch.close()
        return orch

    orch = asyncio.run(run_test())
    assert orch.scans == 2
    assert orch.states.is_processed(late)
    assert orch.scheduler.stats.snapshot().completed == 2


def test_close_cancels_pending_rescan() -> None:
    async def fetch(query):
        return DUNE

    async def run_test():
        orch = _build([], fetch)
        orch.start()
        orch.on_mutations([MutationRecord(added_nodes=1)])
        orch.close()
        await asyncio.sleep(0.05)
        return orch

    orch = asyncio.run(run_test())
    assert orch.scans == 1
    assert orch.scheduler.closed
