"""Notification deduplication and the online grace period.

A notification record is kept per (subscriber, entity, transition) so the
same notification is not sent twice within ``window`` seconds, for example
when status flaps or two cycles observe a transition before the status record
is updated. Records expire from the store on their own after ``record_ttl``.

"Went online" notifications are additionally deferred until the entity has
stayed online for ``grace_period`` seconds; see ``pending_online_recipients``.
"""

import time

from presence_bot.models import EntityStatus
from presence_bot.store import KVStore

DEDUP_WINDOW_SECONDS = 5 * 60
RECORD_TTL_SECONDS = 10 * 60
ONLINE_GRACE_PERIOD_SECONDS = 2 * 60


def make_notification_key(subscriber: int, entity: str, transition: str) -> tuple:
    return ("notifications", subscriber, entity, transition)


class NotificationDeduplicator:
    def __init__(
        self,
        store: KVStore,
        window: float = DEDUP_WINDOW_SECONDS,
        record_ttl: float = RECORD_TTL_SECONDS,
        grace_period: float = ONLINE_GRACE_PERIOD_SECONDS,
    ):
        self._store = store
        self._window = window
        self._record_ttl = record_ttl
        self.grace_period = grace_period

    async def is_recent_notification(self, subscriber: int, entity: str, transition: str) -> bool:
        entry = await self._store.get(make_notification_key(subscriber, entity, transition))
        if entry.value is None:
            return False
        return time.time() - float(entry.value) < self._window

    async def record_notification(self, subscriber: int, entity: str, transition: str) -> None:
        await self._store.set(
            make_notification_key(subscriber, entity, transition),
            time.time(),
            expire_in=self._record_ttl,
        )

    def grace_elapsed(self, status: EntityStatus, now: float) -> bool:
        return (
            status.status == "online"
            and status.online_since is not None
            and now - status.online_since >= self.grace_period
        )

    def pending_online_recipients(
        self, status: EntityStatus, subscribers: set[int], now: float
    ) -> list[int]:
        """Subscribers still owed a "went online" notification for this session."""
        if not self.grace_elapsed(status, now):
            return []
        already = set(status.notified_users)
        return sorted(s for s in subscribers if s not in already)
