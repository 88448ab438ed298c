"""Ephemeral per-subscriber conversation state.

The command layer stores what it is waiting for from a subscriber (for
example the name to add next). Entries carry an absolute expiry; readers treat
an expired entry as absent, and ``sweep_expired`` deletes them in bulk.
"""

import time
from typing import Any

from presence_bot.logger import logger
from presence_bot.models import ConversationState
from presence_bot.store import KVStore

CONVERSATION_PREFIX = "conversation_states"

DEFAULT_STATE_TTL = 10 * 60  # seconds


class ConversationStore:
    def __init__(self, store: KVStore, ttl: float = DEFAULT_STATE_TTL):
        self._store = store
        self._ttl = ttl

    async def set(self, subscriber: int, action: str, data: dict[str, Any] | None = None) -> None:
        state = ConversationState(action=action, data=data, expires_at=time.time() + self._ttl)
        await self._store.set((CONVERSATION_PREFIX, subscriber), state.model_dump())

    async def get(self, subscriber: int) -> ConversationState | None:
        entry = await self._store.get((CONVERSATION_PREFIX, subscriber))
        if entry.value is None:
            return None
        state = ConversationState.model_validate(entry.value)
        if state.is_expired(time.time()):
            return None
        return state

    async def sweep_expired(self) -> int:
        """Delete every expired entry. Returns how many were removed."""
        now = time.time()
        removed = 0
        entries = [entry async for entry in self._store.list((CONVERSATION_PREFIX,))]
        for entry in entries:
            try:
                expired = ConversationState.model_validate(entry.value).is_expired(now)
            except ValueError:
                expired = True
            if not expired:
                continue
            # Only delete the version we inspected; a fresh set wins.
            if await self._store.atomic().check(entry.key, entry.versionstamp).delete(entry.key).commit():
                removed += 1

        if removed:
            logger.info(f"[cleanup] Removed {removed} expired conversation state(s)")
        return removed
