from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from covermeta.core.models import CardHandle

logger = logging.getLogger(__name__)

VISIBILITY_THRESHOLD = 0.1


class VisibilityTracker:
    """
    Tracks which observed cards are currently on screen.

    The host feeds intersection ratios through report(); a card is visible once
    at least `threshold` of it intersects the viewport. Every off->on transition
    calls the on_visible callback before report() returns, so a newly visible
    card is promoted before the next dispatch decision.

    Cards are keyed by identity; nothing is retained after unobserve().
    """

    def __init__(
        self,
        *,
        threshold: float = VISIBILITY_THRESHOLD,
        on_visible: Optional[Callable[[], None]] = None,
        probe: Optional[Callable[[CardHandle], float]] = None,
    ) -> None:
        self.threshold = float(threshold)
        self._on_visible = on_visible
        self._probe = probe
        self._observed: Dict[int, CardHandle] = {}
        self._visible: Dict[int, CardHandle] = {}

    def set_on_visible(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_visible = callback

    def observe(self, card: CardHandle) -> None:
        self._observed[id(card)] = card
        if self._probe is not None:
            self.report(card, self._probe(card))

    def unobserve(self, card: CardHandle) -> None:
        self._observed.pop(id(card), None)
        self._visible.pop(id(card), None)

    def is_observed(self, card: CardHandle) -> bool:
        return id(card) in self._observed

    def is_visible(self, card: CardHandle) -> bool:
        return id(card) in self._visible

    def report(self, card: CardHandle, ratio: float) -> bool:
        """Feed one intersection entry. Returns True on an off->on transition."""
        key = id(card)
        if key not in self._observed:
            return False
        if ratio >= self.threshold:
            if key in self._visible:
                return False
            self._visible[key] = card
            if self._on_visible is not None:
                self._on_visible()
            return True
        self._visible.pop(key, None)
        return False

    @property
    def visible_count(self) -> int:
        return len(self._visible)

    @property
    def observed_count(self) -> int:
        return len(self._observed)
