import gc

from covermeta.core.card_state import FLAG_PROCESSED, CardStateTracker, InMemoryMarker
from covermeta.core.models import CardState


class _Card:
    pass


def test_card_state_lifecycle() -> None:
    states = CardStateTracker()
    card = _Card()
    assert states.state(card) is CardState.UNPROCESSED

    assert states.mark_loading(card)
    assert states.state(card) is CardState.LOADING
    assert states.is_loading(card)

    assert states.mark_processed(card) is True
    assert states.state(card) is CardState.PROCESSED
    assert not states.is_loading(card)


def test_processed_is_terminal() -> None:
    states = CardStateTracker()
    card = _Card()
    states.mark_processed(card)

    assert states.mark_loading(card) is False
    assert states.mark_processed(card) is False
    assert states.state(card) is CardState.PROCESSED


def test_unmark_loading_returns_card_to_unprocessed() -> None:
    states = CardStateTracker()
    card = _Card()
    states.mark_loading(card)
    states.unmark_loading(card)
    assert states.state(card) is CardState.UNPROCESSED


def test_state_lives_on_the_marker() -> None:
    marker = InMemoryMarker()
    card = _Card()
    CardStateTracker(marker).mark_processed(card)

    assert marker.has_flag(card, FLAG_PROCESSED)
    assert CardStateTracker(marker).is_processed(card)
    assert not CardStateTracker().is_processed(card)


def test_recreated_card_starts_unprocessed() -> None:
    marker = InMemoryMarker()
    states = CardStateTracker(marker)
    old = _Card()
    states.mark_processed(old)
    assert len(marker) == 1

    del old
    gc.collect()
    assert len(marker) == 0

    fresh = [_Card() for _ in range(50)]
    assert [states.state(card) for card in fresh] == [CardState.UNPROCESSED] * 50


def test_cards_without_weakref_support_are_still_tracked() -> None:
    marker = InMemoryMarker()
    states = CardStateTracker(marker)
    card = ("Dune", "Frank Herbert")

    states.mark_loading(card)
    assert states.is_loading(card)
    states.mark_processed(card)
    assert states.is_processed(card)
    assert not CardStateTracker(marker).is_loading(card)
