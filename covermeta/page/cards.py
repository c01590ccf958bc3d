from __future__ import annotations

import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from covermeta.core.card_state import FLAG_LOADING, FLAG_PROCESSED
from covermeta.core.models import BookQuery
from covermeta.core.normalize import clean_text

logger = logging.getLogger(__name__)

PROCESSED_ATTRIBUTE = "data-covermeta-processed"
LOADING_ATTRIBUTE = "data-covermeta-loading"

_FLAG_ATTRIBUTES = {
    FLAG_PROCESSED: PROCESSED_ATTRIBUTE,
    FLAG_LOADING: LOADING_ATTRIBUTE,
}

_COVER_RE = re.compile(r"(?:Book|Audiobook):\s*'([^']+)'")
_HEADING_RE = re.compile(r"(?:Book|Audiobook):\s*([^,]+)(?:,\s*by\s+(.+))?")
_AUTHOR_RE = re.compile(r"by\s+([^,.\n]+)", re.IGNORECASE)
_CARD_PREFIXES = ("Book:", "Audiobook:")


class AttributeMarker:
    """Card flags stored as boolean data attributes on the host tag."""

    def has_flag(self, card: Tag, flag: str) -> bool:
        return card.has_attr(_FLAG_ATTRIBUTES[flag])

    def set_flag(self, card: Tag, flag: str) -> None:
        card[_FLAG_ATTRIBUTES[flag]] = "true"

    def clear_flag(self, card: Tag, flag: str) -> None:
        attr = _FLAG_ATTRIBUTES[flag]
        if card.has_attr(attr):
            del card[attr]


def _card_text(card: Tag) -> str:
    return f"{card.get_text()} {card.get('aria-label') or ''}"


def _is_cover_card(card: Tag) -> bool:
    text = _card_text(card)
    return any(p in text for p in _CARD_PREFIXES) and "Cover image" in text


def _author_near(card: Tag) -> Optional[str]:
    parent = card.parent
    if parent is None:
        return None
    m = _AUTHOR_RE.search(parent.get_text())
    if m and m.group(1).strip():
        return m.group(1).strip()
    return None


class CardScanner:
    """
    Finds book cards in a library page and reads their title/author.

    Two layouts are recognized:
      - cover links: text or aria-label like "Book: 'Title'. Cover image."
      - search headings: <h3>Book: Title, by Author</h3> wrapping a link
    """

    def __init__(self, soup: BeautifulSoup) -> None:
        self.soup = soup

    def find_unprocessed_cards(self) -> List[Tag]:
        seen = set()
        cards: List[Tag] = []

        def _add(card: Tag) -> None:
            if id(card) in seen or card.has_attr(PROCESSED_ATTRIBUTE):
                return
            seen.add(id(card))
            cards.append(card)

        for link in self.soup.find_all("a"):
            if _is_cover_card(link):
                _add(link)

        for heading in self.soup.find_all("h3"):
            if not heading.get_text().strip().startswith(_CARD_PREFIXES):
                continue
            link = heading.find("a")
            if link is not None:
                _add(link)

        return cards

    def extract_query(self, card: Tag) -> Optional[BookQuery]:
        text = _card_text(card)
        m = _COVER_RE.search(text)
        if m and m.group(1).strip():
            query = BookQuery(title=m.group(1).strip(), author=_author_near(card))
            logger.debug("extracted cover card | title=%s | author=%s", query.title, query.author)
            return query

        heading = card.find_parent("h3")
        if heading is not None:
            m = _HEADING_RE.search(heading.get_text())
            if m and m.group(1).strip():
                author = (m.group(2) or "").strip() or None
                query = BookQuery(title=m.group(1).strip(), author=author)
                logger.debug("extracted heading card | title=%s | author=%s", query.title, query.author)
                return query

        logger.warning("could not extract title from card | text=%s", clean_text(text)[:160])
        return None
