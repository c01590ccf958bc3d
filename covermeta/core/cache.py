from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from covermeta.core.models import BookQuery, CacheEntry, MetadataRecord
from covermeta.core.normalize import cache_key
from covermeta.errors import StoreError

logger = logging.getLogger(__name__)

CACHE_TTL_S = 30 * 24 * 60 * 60


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[dict]: ...

    def set(self, key: str, value: dict) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def items(self) -> Iterator[Tuple[str, dict]]: ...


class MetadataCache:
    """
    Best-effort metadata cache with a freshness window.

    Entries older than the TTL are treated as absent and deleted when read;
    there is no background sweep. Store failures are logged and degrade to a
    miss on read or a no-op on write, so callers never see an exception.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_s: float = CACHE_TTL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_ms = int(ttl_s * 1000)
        self.clock = clock
        self.stats: Dict[str, int] = {"hits": 0, "misses": 0, "writes": 0, "expired": 0, "errors": 0}

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def is_expired(self, entry: CacheEntry, now_ms: Optional[int] = None) -> bool:
        now_ms = self._now_ms() if now_ms is None else now_ms
        return entry.age_ms(now_ms) > self.ttl_ms

    def get(self, query: BookQuery) -> Optional[MetadataRecord]:
        key = cache_key(query)
        try:
            rec = self.store.get(key)
            if rec is None:
                self.stats["misses"] += 1
                return None
            entry = CacheEntry.from_record(rec)
        except (StoreError, OSError, AttributeError, KeyError, TypeError, ValueError) as e:
            self.stats["errors"] += 1
            self.stats["misses"] += 1
            logger.error("cache read failed | key=%s | err=%r", key, e)
            return None

        if self.is_expired(entry):
            self.stats["expired"] += 1
            self.stats["misses"] += 1
            try:
                self.store.delete(key)
            except (StoreError, OSError) as e:
                self.stats["errors"] += 1
                logger.error("cache delete failed | key=%s | err=%r", key, e)
            logger.debug("cache expired | key=%s", key)
            return None

        self.stats["hits"] += 1
        logger.debug("cache hit | key=%s", key)
        return entry.data

    def set(self, query: BookQuery, data: MetadataRecord) -> None:
        key = cache_key(query)
        entry = CacheEntry(data=data, stored_at=self._now_ms())
        try:
            self.store.set(key, entry.to_record())
        except (StoreError, OSError) as e:
            self.stats["errors"] += 1
            logger.error("cache write failed | key=%s | err=%r", key, e)
            return
        self.stats["writes"] += 1
        logger.debug("cache set | key=%s", key)

    def clear(self) -> None:
        try:
            self.store.clear()
        except (StoreError, OSError) as e:
            self.stats["errors"] += 1
            logger.error("cache clear failed | err=%r", e)
            return
        logger.info("cache cleared")

    def summary(self) -> Dict[str, int]:
        """Count live and stale entries without evicting anything."""
        now_ms = self._now_ms()
        fresh = 0
        expired = 0
        broken = 0
        try:
            for _, rec in self.store.items():
                try:
                    entry = CacheEntry.from_record(rec)
                except (AttributeError, KeyError, TypeError, ValueError):
                    broken += 1
                    continue
                if self.is_expired(entry, now_ms):
                    expired += 1
                else:
                    fresh += 1
        except (StoreError, OSError) as e:
            logger.error("cache scan failed | err=%r", e)
        return {"entries": fresh + expired + broken, "fresh": fresh, "expired": expired, "broken": broken}
