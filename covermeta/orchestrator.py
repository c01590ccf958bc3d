from __future__ import annotations

import functools
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol

from covermeta.core.cache import MetadataCache
from covermeta.core.card_state import CardStateTracker
from covermeta.core.debounce import Debouncer
from covermeta.core.models import BookQuery, CardHandle, MetadataRecord, MutationRecord
from covermeta.core.scheduler import PriorityScheduler
from covermeta.core.visibility import VisibilityTracker

logger = logging.getLogger(__name__)

RESCAN_DEBOUNCE_S = 1.0

Fetcher = Callable[[BookQuery], Awaitable[Optional[MetadataRecord]]]


class CardSource(Protocol):
    def find_unprocessed_cards(self) -> List[CardHandle]: ...

    def extract_query(self, card: CardHandle) -> Optional[BookQuery]: ...


class CardRenderer(Protocol):
    def show_loading(self, card: CardHandle) -> None: ...

    def show_metadata(self, card: CardHandle, record: MetadataRecord, query: BookQuery) -> None: ...

    def clear(self, card: CardHandle) -> None: ...


class Orchestrator:
    """
    Turns page contents into scheduler work.

    Each scan picks up cards that are neither processed nor loading, answers
    them from the cache when possible and otherwise queues a fetch. Page
    mutations that add nodes trigger a re-scan once the page has been quiet
    for `debounce_s`.
    """

    def __init__(
        self,
        *,
        source: CardSource,
        renderer: CardRenderer,
        fetcher: Fetcher,
        cache: MetadataCache,
        states: CardStateTracker,
        visibility: VisibilityTracker,
        scheduler: PriorityScheduler,
        debounce_s: float = RESCAN_DEBOUNCE_S,
    ) -> None:
        self.source = source
        self.renderer = renderer
        self.fetcher = fetcher
        self.cache = cache
        self.states = states
        self.visibility = visibility
        self.scheduler = scheduler
        self.debouncer = Debouncer(debounce_s, self._rescan)
        self.scans = 0

    def start(self) -> int:
        logger.info("orchestrator started")
        return self.scan()

    def scan(self) -> int:
        """Process every eligible card on the page. Returns how many were picked up."""
        self.scans += 1
        cards = [
            c
            for c in self.source.find_unprocessed_cards()
            if not self.states.is_processed(c) and not self.states.is_loading(c)
        ]
        if not cards:
            return 0
        logger.debug("scan %s | new cards=%s", self.scans, len(cards))
        for card in cards:
            self.process_card(card)
        self.scheduler.start_batch()
        return len(cards)

    def process_card(self, card: CardHandle) -> None:
        query = self.source.extract_query(card)
        if query is None:
            self.states.mark_processed(card)
            return

        # loading and observe precede enqueue
        if not self.states.mark_loading(card):
            return
        self.visibility.observe(card)
        self.renderer.show_loading(card)

        cached = self.cache.get(query)
        if cached is not None:
            self.scheduler.stats.inc_cache_hits()
            self.visibility.unobserve(card)
            self.renderer.clear(card)
            self.states.unmark_loading(card)
            self.renderer.show_metadata(card, cached, query)
            self.states.mark_processed(card)
            return

        self.scheduler.stats.inc_cache_misses()
        if not self.scheduler.enqueue(card, functools.partial(self._fetch_and_render, card, query)):
            self.renderer.clear(card)
            self._finish(card)

    async def _fetch_and_render(self, card: CardHandle, query: BookQuery) -> None:
        try:
            record = await self.fetcher(query)
            if record is not None and record.has_data():
                self.cache.set(query, record)
            self.renderer.clear(card)
            self.states.unmark_loading(card)
            if record is not None and record.has_data():
                self.renderer.show_metadata(card, record, query)
        except Exception:
            self.renderer.clear(card)
            raise
        finally:
            self._finish(card)

    def _finish(self, card: CardHandle) -> None:
        self.states.unmark_loading(card)
        self.visibility.unobserve(card)
        self.states.mark_processed(card)

    # -----------------------------
    # Mutation-driven re-scan
    # -----------------------------
    def on_mutations(self, records: Iterable[MutationRecord]) -> bool:
        """Feed a batch of page changes. Returns True if a re-scan was (re)armed."""
        if not any(r.added_nodes > 0 for r in records):
            return False
        self.debouncer.trigger()
        return True

    def _rescan(self) -> None:
        found = self.scan()
        if found:
            logger.info("re-scan picked up %s new cards", found)

    def close(self) -> None:
        self.debouncer.cancel()
        self.scheduler.close()
