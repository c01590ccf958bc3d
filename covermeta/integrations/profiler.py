from __future__ import annotations

import json
from collections import defaultdict
from typing import Dict

from covermeta.core.store import atomic_write_text


class RequestProfiler:
    """Per-host request counts, error rate and mean latency for one session."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, int] = defaultdict(int)
        self._lat_sum: Dict[str, float] = defaultdict(float)

    def record(self, host: str, elapsed_s: float, ok: bool) -> None:
        self._counts[host] += 1
        self._lat_sum[host] += float(elapsed_s)
        if not ok:
            self._errors[host] += 1

    def summary(self) -> dict:
        out = {}
        for key in self._counts:
            count = self._counts[key]
            err = self._errors.get(key, 0)
            lat = self._lat_sum.get(key, 0.0)
            out[key] = {
                "requests": count,
                "errors": err,
                "error_rate": (err / count) if count else 0.0,
                "avg_latency_s": (lat / count) if count else 0.0,
            }
        return out

    def write(self, path: str) -> None:
        payload = {"hosts": self.summary()}

        def _write(tmp_path: str) -> None:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)

        atomic_write_text(_write, path)
