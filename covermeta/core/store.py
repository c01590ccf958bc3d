from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Dict, Iterator, Optional, Tuple

from covermeta.errors import StoreError

logger = logging.getLogger(__name__)


class MemoryStore:
    """In-process key/value store. Contents die with the process."""

    def __init__(self, initial: Optional[Dict[str, dict]] = None) -> None:
        self._data: Dict[str, dict] = dict(initial or {})

    def get(self, key: str) -> Optional[dict]:
        return self._data.get(key)

    def set(self, key: str, value: dict) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> Iterator[Tuple[str, dict]]:
        return iter(list(self._data.items()))

    def __len__(self) -> int:
        return len(self._data)

    def close(self) -> None:
        return None


def atomic_write_text(write_fn, out_path: str) -> None:
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    d = os.path.dirname(out_path) or "."
    with tempfile.NamedTemporaryFile("w", delete=False, dir=d, encoding="utf-8") as tf:
        tmp_path = tf.name
    try:
        write_fn(tmp_path)
        os.replace(tmp_path, out_path)
    finally:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError:
            pass


class JsonlStore:
    """
    Append-only JSON-lines store.

    Each line is either {"op": "set", "key": ..., "value": {...}} or
    {"op": "delete", "key": ...}. The log is replayed on open; the latest
    record per key wins. compact() rewrites the log with live keys only.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: Dict[str, dict] = {}
        self._dead = 0
        self._fh = None
        self._load()

    def _load(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            if os.path.exists(self.path):
                with open(self.path, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            rec = json.loads(line)
                        except ValueError:
                            self._dead += 1
                            continue
                        self._apply(rec)
            self._fh = open(self.path, "a", encoding="utf-8")
        except OSError as e:
            raise StoreError(f"cache store unavailable: {self.path} ({e})") from e
        logger.debug("store loaded | path=%s | keys=%s | dead=%s", self.path, len(self._data), self._dead)

    def _apply(self, rec: dict) -> None:
        key = rec.get("key")
        if not isinstance(key, str) or not key:
            self._dead += 1
            return
        op = rec.get("op")
        if op == "set" and isinstance(rec.get("value"), dict):
            if key in self._data:
                self._dead += 1
            self._data[key] = rec["value"]
        elif op == "delete":
            if self._data.pop(key, None) is not None:
                self._dead += 1
            self._dead += 1
        else:
            self._dead += 1

    def _append(self, rec: dict) -> None:
        if self._fh is None:
            raise StoreError(f"cache store closed: {self.path}")
        try:
            self._fh.write(json.dumps(rec, ensure_ascii=False) + "\n")
            self._fh.flush()
        except OSError as e:
            raise StoreError(f"cache write failed: {self.path} ({e})") from e

    def get(self, key: str) -> Optional[dict]:
        return self._data.get(key)

    def set(self, key: str, value: dict) -> None:
        self._append({"op": "set", "key": key, "value": value})
        if key in self._data:
            self._dead += 1
        self._data[key] = value

    def delete(self, key: str) -> None:
        if key not in self._data:
            return
        self._append({"op": "delete", "key": key})
        del self._data[key]
        self._dead += 2

    def clear(self) -> None:
        try:
            if self._fh is not None:
                self._fh.close()
            self._fh = open(self.path, "w", encoding="utf-8")
        except OSError as e:
            self._fh = None
            raise StoreError(f"cache clear failed: {self.path} ({e})") from e
        self._data.clear()
        self._dead = 0

    def compact(self) -> int:
        """Rewrite the log with one record per live key. Returns dead records dropped."""
        dropped = self._dead
        snapshot = dict(self._data)

        def _write(tmp_path: str) -> None:
            with open(tmp_path, "w", encoding="utf-8") as f:
                for key, value in snapshot.items():
                    f.write(json.dumps({"op": "set", "key": key, "value": value}, ensure_ascii=False) + "\n")

        try:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
            atomic_write_text(_write, self.path)
            self._fh = open(self.path, "a", encoding="utf-8")
        except OSError as e:
            raise StoreError(f"cache compact failed: {self.path} ({e})") from e
        self._dead = 0
        logger.info("store compacted | path=%s | keys=%s | dropped=%s", self.path, len(snapshot), dropped)
        return dropped

    @property
    def dead_records(self) -> int:
        return self._dead

    def items(self) -> Iterator[Tuple[str, dict]]:
        return iter(list(self._data.items()))

    def __len__(self) -> int:
        return len(self._data)

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None
