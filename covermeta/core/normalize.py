from __future__ import annotations

import re
from typing import Optional

from covermeta.core.models import BookQuery

CACHE_KEY_PREFIX = "book"
UNKNOWN_AUTHOR = "unknown"

_WS_RE = re.compile(r"\s+")


def normalize_field(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def cache_key(query: BookQuery) -> str:
    """
    Stable cache key for a book query.

    Title and author are lower-cased and trimmed; an absent or blank author
    maps to "unknown", so "Dune" by nobody and "Dune" by Frank Herbert never
    share an entry.
    """
    title = normalize_field(query.title)
    author = normalize_field(query.author) or UNKNOWN_AUTHOR
    return f"{CACHE_KEY_PREFIX}:{title}:{author}"


def clean_text(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def format_count(count: int) -> str:
    if count >= 1000:
        return f"{count / 1000:.1f}k"
    return str(count)
