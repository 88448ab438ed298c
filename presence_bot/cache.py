"""Short-lived read-through cache for per-entity status records.

Status reads happen for every queued entity on every poll cycle. Serving them
from memory for up to ``ttl`` seconds keeps that load off the store; the
staleness is acceptable because the poller itself runs once a minute.
"""

import copy
import time

from presence_bot.models import EntityStatus


class StatusCache:
    def __init__(self, ttl: float = 30):
        self._store: dict[str, tuple[float, EntityStatus]] = {}  # name -> (stored_at, status)
        self._ttl = ttl

    def _cleanup(self) -> None:
        now = time.monotonic()
        expired = [k for k, (at, _) in self._store.items() if now - at >= self._ttl]
        for k in expired:
            del self._store[k]

    def get(self, name: str) -> EntityStatus | None:
        item = self._store.get(name)
        if item is None:
            return None
        stored_at, status = item
        if time.monotonic() - stored_at >= self._ttl:
            del self._store[name]
            return None
        return copy.deepcopy(status)

    def set(self, name: str, status: EntityStatus) -> None:
        self._store[name] = (time.monotonic(), copy.deepcopy(status))

    def invalidate(self, name: str) -> None:
        self._store.pop(name, None)

    def clear(self) -> None:
        self._store.clear()

    @property
    def size(self) -> int:
        self._cleanup()
        return len(self._store)
