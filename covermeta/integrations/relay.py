from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Optional
from urllib.parse import urlparse

import requests

from covermeta.core.models import FetchResponse
from covermeta.errors import HostDisconnectedError
from covermeta.integrations.profiler import RequestProfiler

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "covermeta/0.1 (+personal use)"
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


def make_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    s = requests.Session()
    s.headers.update({
        "Accept": "text/html,application/xhtml+xml",
        "User-Agent": user_agent,
    })
    return s


def _sleep_jitter(base: float, jitter: float = 0.25) -> None:
    time.sleep(max(0.0, base + random.random() * jitter))


def fetch_page(session: requests.Session, url: str, *, timeout_s: float, retries: int) -> FetchResponse:
    """
    Blocking GET returning a FetchResponse instead of raising:
      - exponential backoff + jitter for 429/5xx/network errors
      - any other non-2xx is a failed response carrying the status
    """
    backoff = 1.0
    last_error = "no attempt made"
    for attempt in range(1, retries + 2):
        try:
            logger.debug("request | method=GET | url=%s | attempt=%s/%s", url, attempt, retries + 1)
            r = session.get(url, timeout=timeout_s)
        except requests.RequestException as e:
            last_error = f"request error: {e!r}"
            if attempt <= retries:
                logger.warning("request error | url=%s | err=%r (retrying)", url, e)
                _sleep_jitter(backoff, 0.5)
                backoff = min(30.0, backoff * 2)
                continue
            return FetchResponse.failed(last_error)

        if r.status_code in RETRYABLE_STATUSES and attempt <= retries:
            ra = r.headers.get("Retry-After")
            if ra and ra.isdigit():
                logger.warning("retrying after %ss | status=%s | url=%s", ra, r.status_code, url)
                _sleep_jitter(min(30.0, float(ra)), 0.5)
            else:
                logger.warning("retrying | status=%s | backoff=%s | url=%s", r.status_code, backoff, url)
                _sleep_jitter(backoff, 0.5)
            backoff = min(30.0, backoff * 2)
            continue
        if r.status_code >= 400:
            return FetchResponse.failed(f"HTTP {r.status_code}: {r.reason}", status_code=r.status_code)
        return FetchResponse.ok(r.text or "", status_code=r.status_code)
    return FetchResponse.failed(last_error)


class FetchRelay:
    """
    Cross-boundary fetch relay: one request kind, a URL in, a FetchResponse out.

    The blocking HTTP call runs in a worker thread so the event loop keeps
    dispatching. Once disconnect() is called (the embedding host went away),
    every request raises HostDisconnectedError.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout_s: float = 15,
        retries: int = 2,
        user_agent: str = DEFAULT_USER_AGENT,
        profiler: Optional[RequestProfiler] = None,
    ) -> None:
        self.session = session if session is not None else make_session(user_agent)
        self.timeout_s = timeout_s
        self.retries = max(0, int(retries))
        self.profiler = profiler
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        self._connected = False

    async def request(self, url: str) -> FetchResponse:
        if not self._connected:
            raise HostDisconnectedError("Relay context invalidated")
        start = time.monotonic()
        response = await asyncio.to_thread(
            fetch_page,
            self.session,
            url,
            timeout_s=self.timeout_s,
            retries=self.retries,
        )
        if self.profiler is not None:
            self.profiler.record(urlparse(url).netloc, time.monotonic() - start, response.success)
        if not response.success:
            logger.warning("relay fetch error | url=%s | err=%s", url, response.error)
        return response

    def close(self) -> None:
        self._connected = False
        self.session.close()
