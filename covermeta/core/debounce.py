from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Coalesce bursts of triggers into one callback.

    Every trigger() restarts the quiet window; the callback runs once the
    window elapses with no further triggers.
    """

    def __init__(self, delay_s: float, callback: Callable[[], None]) -> None:
        if delay_s < 0:
            raise ValueError("delay_s must be >= 0")
        self.delay_s = float(delay_s)
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay_s, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def pending(self) -> bool:
        return self._handle is not None
