from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

# Any host-owned object (a bs4 Tag for the bundled page adapter). Compared by identity only.
CardHandle = Any

Task = Callable[[], Awaitable[Any]]


class CardState(enum.Enum):
    UNPROCESSED = "unprocessed"
    LOADING = "loading"
    PROCESSED = "processed"


@dataclass(frozen=True)
class BookQuery:
    title: str
    author: Optional[str] = None

    def search_text(self) -> str:
        if self.author:
            return f"{self.title} {self.author}"
        return self.title


@dataclass(frozen=True)
class MetadataRecord:
    average_rating: Optional[float] = None
    ratings_count: Optional[int] = None
    categories: Tuple[str, ...] = ()
    source: str = "goodreads"

    def has_data(self) -> bool:
        return bool(self.average_rating or self.ratings_count)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.average_rating is not None:
            out["averageRating"] = self.average_rating
        if self.ratings_count is not None:
            out["ratingsCount"] = self.ratings_count
        if self.categories:
            out["categories"] = list(self.categories)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetadataRecord":
        rating = data.get("averageRating")
        count = data.get("ratingsCount")
        cats = data.get("categories") or []
        return cls(
            average_rating=float(rating) if rating is not None else None,
            ratings_count=int(count) if count is not None else None,
            categories=tuple(str(c) for c in cats if str(c).strip()),
        )


@dataclass(frozen=True)
class CacheEntry:
    data: MetadataRecord
    stored_at: int  # epoch millis

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.stored_at

    def to_record(self) -> Dict[str, Any]:
        return {"data": self.data.to_dict(), "timestamp": self.stored_at}

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "CacheEntry":
        return cls(data=MetadataRecord.from_dict(rec.get("data") or {}), stored_at=int(rec["timestamp"]))


@dataclass
class QueueItem:
    card: CardHandle
    task: Task


@dataclass(frozen=True)
class FetchResponse:
    success: bool
    payload: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, payload: str, status_code: Optional[int] = None) -> "FetchResponse":
        return cls(success=True, payload=payload, status_code=status_code)

    @classmethod
    def failed(cls, error: str, status_code: Optional[int] = None) -> "FetchResponse":
        return cls(success=False, error=error, status_code=status_code)


@dataclass(frozen=True)
class MutationRecord:
    added_nodes: int = 0
    removed_nodes: int = 0


@dataclass(frozen=True)
class StatsSnapshot:
    enqueued: int
    dispatched: int
    completed: int
    failed: int
    peak_active: int
    reprioritized: int
    cache_hits: int
    cache_misses: int
