from __future__ import annotations

import functools
import logging
import weakref
from typing import Callable, Dict, Optional, Protocol, Set, Tuple

from covermeta.core.models import CardHandle, CardState

logger = logging.getLogger(__name__)

FLAG_PROCESSED = "processed"
FLAG_LOADING = "loading"


class CardMarker(Protocol):
    def has_flag(self, card: CardHandle, flag: str) -> bool: ...

    def set_flag(self, card: CardHandle, flag: str) -> None: ...

    def clear_flag(self, card: CardHandle, flag: str) -> None: ...


class _StrongRef:
    __slots__ = ("obj",)

    def __init__(self, obj: CardHandle) -> None:
        self.obj = obj

    def __call__(self) -> CardHandle:
        return self.obj


class InMemoryMarker:
    """
    Identity-keyed flags for hosts that cannot carry attributes.

    Each entry holds a weak reference to its card and is dropped when the card
    is collected, so a recycled id() never inherits another card's flags.
    Cards that cannot be weakly referenced are held strongly until their last
    flag is cleared.
    """

    def __init__(self) -> None:
        self._flags: Dict[int, Tuple[Callable[[], Optional[CardHandle]], Set[str]]] = {}

    def _entry(self, card: CardHandle) -> Optional[Set[str]]:
        entry = self._flags.get(id(card))
        if entry is None or entry[0]() is not card:
            return None
        return entry[1]

    def _forget(self, key: int, ref: weakref.ref) -> None:
        entry = self._flags.get(key)
        if entry is not None and entry[0] is ref:
            del self._flags[key]

    def has_flag(self, card: CardHandle, flag: str) -> bool:
        flags = self._entry(card)
        return flags is not None and flag in flags

    def set_flag(self, card: CardHandle, flag: str) -> None:
        flags = self._entry(card)
        if flags is None:
            key = id(card)
            try:
                ref = weakref.ref(card, functools.partial(self._forget, key))
            except TypeError:
                ref = _StrongRef(card)
            flags = set()
            self._flags[key] = (ref, flags)
        flags.add(flag)

    def clear_flag(self, card: CardHandle, flag: str) -> None:
        flags = self._entry(card)
        if flags is None:
            return
        flags.discard(flag)
        if not flags:
            del self._flags[id(card)]

    def __len__(self) -> int:
        return len(self._flags)


class CardStateTracker:
    """
    Per-card Unprocessed -> Loading -> Processed register.

    State is written back onto the host object through a CardMarker, so a
    re-scan of the same page sees processed cards as ineligible even across
    tracker instances. Processed is terminal.
    """

    def __init__(self, marker: Optional[CardMarker] = None) -> None:
        self.marker: CardMarker = marker if marker is not None else InMemoryMarker()

    def state(self, card: CardHandle) -> CardState:
        if self.marker.has_flag(card, FLAG_PROCESSED):
            return CardState.PROCESSED
        if self.marker.has_flag(card, FLAG_LOADING):
            return CardState.LOADING
        return CardState.UNPROCESSED

    def mark_loading(self, card: CardHandle) -> bool:
        if self.is_processed(card):
            logger.debug("refusing to reload processed card")
            return False
        self.marker.set_flag(card, FLAG_LOADING)
        return True

    def unmark_loading(self, card: CardHandle) -> None:
        self.marker.clear_flag(card, FLAG_LOADING)

    def is_loading(self, card: CardHandle) -> bool:
        return self.marker.has_flag(card, FLAG_LOADING)

    def mark_processed(self, card: CardHandle) -> bool:
        """Returns True only the first time a card is marked."""
        self.marker.clear_flag(card, FLAG_LOADING)
        if self.marker.has_flag(card, FLAG_PROCESSED):
            return False
        self.marker.set_flag(card, FLAG_PROCESSED)
        return True

    def is_processed(self, card: CardHandle) -> bool:
        return self.marker.has_flag(card, FLAG_PROCESSED)
