from __future__ import annotations

import logging
import re
from typing import Optional
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from covermeta.core.models import BookQuery, MetadataRecord
from covermeta.errors import HostDisconnectedError
from covermeta.integrations.relay import FetchRelay

logger = logging.getLogger(__name__)

GOODREADS_SEARCH_BASE = "https://www.goodreads.com/search"
BOOK_ROW_SELECTOR = 'tr[itemtype="http://schema.org/Book"]'

_AVG_RE = re.compile(r"([\d.]+)\s+avg rating")
_COUNT_RE = re.compile(r"([\d,]+)\s+rating")


def build_search_url(query: BookQuery) -> str:
    return f"{GOODREADS_SEARCH_BASE}?{urlencode({'q': query.search_text()})}"


def parse_minirating(text: str) -> MetadataRecord:
    """Parse text like '4.08 avg rating — 197,024 ratings'."""
    rating = None
    count = None
    m = _AVG_RE.search(text or "")
    if m:
        try:
            rating = float(m.group(1))
        except ValueError:
            rating = None
    m = _COUNT_RE.search(text or "")
    if m:
        digits = m.group(1).replace(",", "")
        if digits.isdigit():
            count = int(digits)
    return MetadataRecord(average_rating=rating, ratings_count=count)


def parse_search_results(html: str) -> Optional[MetadataRecord]:
    """Rating data from the first book row of a Goodreads search page, or None."""
    soup = BeautifulSoup(html or "", "html.parser")
    first = soup.select_one(BOOK_ROW_SELECTOR)
    if first is None:
        return None
    mini = first.select_one(".minirating")
    if mini is None:
        return None
    record = parse_minirating(mini.get_text(" ", strip=True))
    return record if record.has_data() else None


class GoodreadsFetcher:
    """Fetch-and-parse collaborator: BookQuery in, MetadataRecord or None out."""

    def __init__(self, relay: FetchRelay) -> None:
        self.relay = relay

    async def __call__(self, query: BookQuery) -> Optional[MetadataRecord]:
        if not self.relay.connected:
            return None
        url = build_search_url(query)
        try:
            response = await self.relay.request(url)
        except HostDisconnectedError:
            return None
        if not response.success:
            logger.error("goodreads fetch error | title=%s | err=%s", query.title, response.error)
            return None
        record = parse_search_results(response.payload or "")
        if record is None:
            logger.debug("no goodreads results | title=%s", query.title)
        return record
