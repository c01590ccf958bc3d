from __future__ import annotations

import itertools
import logging
from typing import Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from covermeta.core.models import BookQuery, MetadataRecord
from covermeta.core.normalize import format_count
from covermeta.integrations.goodreads import build_search_url

logger = logging.getLogger(__name__)

METADATA_CLASS = "covermeta-metadata"
LOADING_CLASS = "covermeta-loading"
OWNER_ATTRIBUTE = "data-covermeta-owner"
FACTS_SELECTOR = ".title-tile-facts"
MAX_GENRES = 2


def _find_title_tile_facts(card: Tag) -> Optional[Tag]:
    heading = card.parent
    if heading is None or heading.parent is None:
        return None
    return heading.parent.select_one(FACTS_SELECTOR)


class SoupRenderer:
    """
    Writes loading indicators and metadata links into a BeautifulSoup tree.

    Inserted elements may land outside the card (next to its heading or in a
    facts row), so each carries the owning card's token in OWNER_ATTRIBUTE and
    clear() only removes elements that belong to that card.
    """

    def __init__(self, soup: BeautifulSoup) -> None:
        self.soup = soup
        self._tokens = itertools.count(1)

    def _owner(self, card: Tag) -> str:
        token = card.get(OWNER_ATTRIBUTE)
        if not token:
            token = str(next(self._tokens))
            card[OWNER_ATTRIBUTE] = token
        return token

    def _span(self, cls: str, text: str) -> Tag:
        span = self.soup.new_tag("span", attrs={"class": cls})
        span.string = text
        return span

    def _insert(self, card: Tag, el: Tag) -> None:
        el[OWNER_ATTRIBUTE] = self._owner(card)
        facts = _find_title_tile_facts(card)
        if facts is not None:
            facts.append(el)
            return
        heading = card.parent
        if heading is not None and heading.parent is not None:
            heading.insert_after(el)
            return
        card.append(el)

    def show_loading(self, card: Tag) -> None:
        div = self.soup.new_tag("div", attrs={"class": METADATA_CLASS})
        div.append(self.soup.new_tag("span", attrs={"class": LOADING_CLASS}))
        self._insert(card, div)

    def build_metadata(self, record: MetadataRecord, query: BookQuery) -> Tag:
        link = self.soup.new_tag(
            "a",
            attrs={
                "href": build_search_url(query),
                "target": "_blank",
                "rel": "noopener",
                "class": METADATA_CLASS,
                "title": "Open in Goodreads",
            },
        )
        parts = []
        if record.average_rating and record.ratings_count:
            rating = self.soup.new_tag("span", attrs={"class": "covermeta-rating"})
            rating.append(self._span("covermeta-rating-star", "⭐"))
            rating.append(self._span("covermeta-rating-value", f"{record.average_rating:.1f}"))
            rating.append(" ")
            rating.append(self._span("covermeta-rating-count", f"({format_count(record.ratings_count)})"))
            parts.append(rating)
        if record.categories:
            if parts:
                parts.append(self._span("covermeta-genre-separator", "•"))
            parts.append(self._span("covermeta-genres", ", ".join(record.categories[:MAX_GENRES])))
        for i, part in enumerate(parts):
            if i:
                link.append(" ")
            link.append(part)
        return link

    def show_metadata(self, card: Tag, record: MetadataRecord, query: BookQuery) -> None:
        self._insert(card, self.build_metadata(record, query))

    def clear(self, card: Tag) -> int:
        """Remove this card's indicators/metadata from the card and its grandparent container."""
        token = card.get(OWNER_ATTRIBUTE)
        if not token:
            return 0
        selector = f'.{METADATA_CLASS}[{OWNER_ATTRIBUTE}="{token}"]'
        scopes = [card]
        container = card.parent.parent if card.parent is not None else None
        if container is not None:
            scopes.append(container)
        removed = 0
        for scope in scopes:
            for el in scope.select(selector):
                el.decompose()
                removed += 1
        return removed
