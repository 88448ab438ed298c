"""Status source client.

Fetches the current online/offline status of one entity from the remote JSON
API. Every outbound call passes through a single shared ``RateLimiter``: the
gate spaces calls ``current_backoff`` seconds apart, decays that spacing after
each success and doubles it after each failure (up to a cap). Calls are
serialized through the gate regardless of how many callers are waiting.

``fetch_status`` never raises: every failure collapses to ``"unknown"`` so the
poller can skip ambiguous reads uniformly.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from presence_bot.config import STATUS_API_URL
from presence_bot.logger import logger
from presence_bot.models import FetchResult

T = TypeVar("T")

MIN_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 30.0
SUCCESS_DECAY = 0.9
FAILURE_GROWTH = 2.0

REQUEST_TIMEOUT_SECONDS = 10
USER_AGENT = "presence-bot/1.0"


class RateLimited(Exception):
    """Upstream answered 429."""


class RateLimiter:
    def __init__(
        self,
        min_backoff: float = MIN_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
    ):
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self.current_backoff = min_backoff
        self.last_call_time = 0.0
        self._lock = asyncio.Lock()

    def delay_remaining(self) -> float:
        """Seconds the next call would have to wait right now."""
        elapsed = time.monotonic() - self.last_call_time
        return max(0.0, self.current_backoff - elapsed)

    def record_success(self) -> None:
        self.current_backoff = max(self.min_backoff, self.current_backoff * SUCCESS_DECAY)
        self.last_call_time = time.monotonic()

    def record_failure(self) -> None:
        self.current_backoff = min(self.max_backoff, self.current_backoff * FAILURE_GROWTH)
        self.last_call_time = time.monotonic()

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once the backoff window has passed.

        Any exception from ``fn`` counts as a failure and is re-raised.
        """
        async with self._lock:
            wait = self.delay_remaining()
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                result = await fn()
            except Exception:
                self.record_failure()
                raise
            self.record_success()
            return result


class StatusSourceClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        limiter: RateLimiter | None = None,
        url_template: str = STATUS_API_URL,
    ):
        self._client = client
        self.limiter = limiter or RateLimiter()
        self._url_template = url_template

    async def _request(self, name: str) -> FetchResult:
        url = self._url_template.format(name=name)
        resp = await self._client.get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

        if resp.status_code == 404:
            return "offline"  # no such entity upstream
        if resp.status_code == 429:
            raise RateLimited(f"rate limited while fetching {name}")
        if not resp.is_success:
            logger.warning(f"[source] {name}: HTTP {resp.status_code}")
            return "unknown"

        data = resp.json()
        return "offline" if data.get("room_status") == "offline" else "online"

    async def fetch_status(self, name: str) -> FetchResult:
        try:
            return await self.limiter.call(lambda: self._request(name))
        except RateLimited as e:
            logger.warning(
                f"[source] {e}, backoff now {self.limiter.current_backoff:.1f}s"
            )
        except Exception as e:
            logger.error(f"[source] Failed to fetch status for {name}: {e!r}")
        return "unknown"
