"""Subscriptions, the tracked-entity queue and per-entity status records.

Key layout in the store::

    ("users", subscriber)                     -> True
    ("subscriptions", subscriber, entity)     -> True
    ("subscribers", entity, subscriber)       -> True
    ("entity_revision", entity)               -> timestamp of last relation change
    ("queue",)                                -> [entity, ...]
    ("statuses", entity)                      -> EntityStatus dump

Invariant: an entity is in the queue exactly when it has at least one
subscriber. Every subscribe/unsubscribe rewrites the entity's revision key,
and queue mutations check that key's versionstamp, so a queue commit fails if
the subscriber set changed after it was counted.
"""

import asyncio
import time

from pydantic import ValidationError

from presence_bot.cache import StatusCache
from presence_bot.conversation import CONVERSATION_PREFIX
from presence_bot.logger import logger
from presence_bot.models import STATUS_SCHEMA_VERSION, EntityStatus
from presence_bot.retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_JITTER, cas_retry
from presence_bot.store import KVStore
from presence_bot.utils import sanitize_name

QUEUE_KEY = ("queue",)

# Millisecond epoch timestamps are written by older record versions.
_MS_TIMESTAMP_THRESHOLD = 1e11


def _revision_key(name: str) -> tuple:
    return ("entity_revision", name)


def _status_key(name: str) -> tuple:
    return ("statuses", name)


class SubscriptionRepository:
    def __init__(
        self,
        store: KVStore,
        cache: StatusCache | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_jitter: float = DEFAULT_MAX_JITTER,
    ):
        self._store = store
        self._cache = cache or StatusCache()
        self._max_attempts = max_attempts
        self._max_jitter = max_jitter
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, subscriber: int, raw_name: str) -> str | None:
        """Subscribe ``subscriber`` to an entity.

        Returns the normalized name, or None when the name is invalid (no-op).
        Queue insertion continues in the background; ``drain()`` awaits it.
        """
        name = sanitize_name(raw_name)
        if not name:
            logger.debug(f"[repo] Ignoring subscribe with invalid name {raw_name!r}")
            return None

        await (
            self._store.atomic()
            .set(("users", subscriber), True)
            .set(("subscriptions", subscriber, name), True)
            .set(("subscribers", name, subscriber), True)
            .set(_revision_key(name), time.time())
            .commit()
        )

        task = asyncio.create_task(self._ensure_queued(name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return name

    async def _ensure_queued(self, name: str) -> None:
        async def attempt() -> bool:
            queue_entry = await self._store.get(QUEUE_KEY)
            revision = await self._store.get(_revision_key(name))
            queue = queue_entry.value or []
            if name in queue:
                return True
            # Unsubscribed again before we got here: nothing to track.
            if not await self._has_subscribers(name):
                return True
            return await (
                self._store.atomic()
                .check(QUEUE_KEY, queue_entry.versionstamp)
                .check(_revision_key(name), revision.versionstamp)
                .set(QUEUE_KEY, [*queue, name])
                .commit()
            )

        await cas_retry(
            attempt,
            f"queue insert of {name}",
            max_attempts=self._max_attempts,
            max_jitter=self._max_jitter,
        )

    async def drain(self) -> None:
        """Wait for background queue insertions to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def unsubscribe(self, subscriber: int, raw_name: str) -> str | None:
        name = sanitize_name(raw_name)
        if not name:
            logger.debug(f"[repo] Ignoring unsubscribe with invalid name {raw_name!r}")
            return None

        await (
            self._store.atomic()
            .delete(("subscriptions", subscriber, name))
            .delete(("subscribers", name, subscriber))
            .set(_revision_key(name), time.time())
            .commit()
        )
        await self._cleanup_entity(name)
        return name

    async def _cleanup_entity(self, name: str) -> None:
        """Drop ``name`` from the queue and its status if nobody subscribes."""
        removed = False

        async def attempt() -> bool:
            nonlocal removed
            removed = False
            queue_entry = await self._store.get(QUEUE_KEY)
            revision = await self._store.get(_revision_key(name))
            if await self._has_subscribers(name):
                return True

            queue = queue_entry.value or []
            op = (
                self._store.atomic()
                .check(QUEUE_KEY, queue_entry.versionstamp)
                .check(_revision_key(name), revision.versionstamp)
                .delete(_status_key(name))
                .delete(_revision_key(name))
            )
            if name in queue:
                op.set(QUEUE_KEY, [m for m in queue if m != name])
            removed = await op.commit()
            return removed

        ok = await cas_retry(
            attempt,
            f"queue removal of {name}",
            max_attempts=self._max_attempts,
            max_jitter=self._max_jitter,
        )
        if ok and removed:
            self._cache.invalidate(name)
            logger.info(f"[repo] {name} has no subscribers left, removed from queue")

    async def _has_subscribers(self, name: str) -> bool:
        async for _ in self._store.list(("subscribers", name), limit=1):
            return True
        return False

    async def list_subscriptions(self, subscriber: int) -> set[str]:
        return {
            entry.key[2]
            async for entry in self._store.list(("subscriptions", subscriber))
        }

    async def list_subscribers(self, name: str) -> set[int]:
        return {
            entry.key[2]
            async for entry in self._store.list(("subscribers", name))
        }

    async def remove_subscriber_everywhere(self, subscriber: int) -> None:
        """Purge a subscriber that can no longer be reached."""
        names = await self.list_subscriptions(subscriber)
        for name in names:
            await self.unsubscribe(subscriber, name)
        await (
            self._store.atomic()
            .delete(("users", subscriber))
            .delete((CONVERSATION_PREFIX, subscriber))
            .commit()
        )
        logger.info(
            f"[repo] Removed subscriber {subscriber} from {len(names)} subscription(s)"
        )

    # ------------------------------------------------------------------
    # User registry and queue
    # ------------------------------------------------------------------

    async def all_user_ids(self) -> list[int]:
        return [entry.key[1] async for entry in self._store.list(("users",))]

    async def get_queue(self) -> list[str]:
        return (await self._store.get(QUEUE_KEY)).value or []

    # ------------------------------------------------------------------
    # Status records
    # ------------------------------------------------------------------

    async def get_status(self, name: str) -> EntityStatus | None:
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        entry = await self._store.get(_status_key(name))
        if entry.value is None:
            return None
        status = EntityStatus.model_validate(entry.value)
        self._cache.set(name, status)
        return status

    async def update_status(self, name: str, status: EntityStatus) -> bool:
        """Persist ``status`` unless the entity has left the queue meanwhile.

        Returns True when the record was written.
        """
        written = False

        async def attempt() -> bool:
            nonlocal written
            written = False
            revision = await self._store.get(_revision_key(name))
            if revision.versionstamp is None:
                return True
            written = await (
                self._store.atomic()
                .check(_revision_key(name), revision.versionstamp)
                .set(_status_key(name), status.model_dump())
                .commit()
            )
            return written

        await cas_retry(
            attempt,
            f"status update of {name}",
            max_attempts=self._max_attempts,
            max_jitter=self._max_jitter,
        )
        if written:
            self._cache.set(name, status)
        else:
            self._cache.invalidate(name)
        return written

    # ------------------------------------------------------------------
    # Startup migration
    # ------------------------------------------------------------------

    async def migrate_statuses(self) -> int:
        """Rewrite legacy status records into the current schema.

        Safe to run repeatedly: canonical records are left untouched. Also
        backfills revision keys for queued entities created before they
        existed. Returns the number of records rewritten.
        """
        migrated = 0
        entries = [entry async for entry in self._store.list(("statuses",))]
        for entry in entries:
            name = entry.key[1]
            try:
                upgraded = await self._upgrade_status_record(name, entry.value)
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning(f"[repo] Dropping unreadable status record for {name}: {e}")
                await self._store.delete(entry.key)
                continue
            if upgraded == entry.value:
                continue
            ok = await (
                self._store.atomic()
                .check(entry.key, entry.versionstamp)
                .set(entry.key, upgraded)
                .commit()
            )
            if ok:
                migrated += 1
                self._cache.invalidate(name)

        for name in await self.get_queue():
            revision = await self._store.get(_revision_key(name))
            if revision.versionstamp is None:
                await (
                    self._store.atomic()
                    .check(_revision_key(name), None)
                    .set(_revision_key(name), time.time())
                    .commit()
                )

        if migrated:
            logger.info(f"[repo] Migrated {migrated} status record(s) to schema v{STATUS_SCHEMA_VERSION}")
        return migrated

    async def _upgrade_status_record(self, name: str, raw) -> dict:
        if isinstance(raw, str):
            raw = {"status": raw}
        record = dict(raw)
        if record.get("schema_version") == STATUS_SCHEMA_VERSION:
            return EntityStatus.model_validate(record).model_dump()

        status = record.get("status")
        if status not in ("online", "offline"):
            status = "offline"

        online_since = _to_seconds(record.get("online_since"))
        if status == "online" and online_since is None:
            online_since = time.time()

        if "notified_users" in record:
            notified = list(record.get("notified_users") or [])
        elif status == "online":
            # Older records notified everyone on the transition itself.
            notified = sorted(await self.list_subscribers(name))
        else:
            notified = []

        return EntityStatus(
            status=status,
            online_since=online_since,
            notified_users=notified,
            last_notification_time=_to_seconds(record.get("last_notification_time")),
        ).model_dump()


def _to_seconds(value) -> float | None:
    if value is None:
        return None
    value = float(value)
    if value > _MS_TIMESTAMP_THRESHOLD:
        return value / 1000
    return value
