"""Poll job: detect status transitions and notify subscribers.

Each cycle runs under a store lease so overlapping runs (a slow cycle, a
second process) never check the queue twice. The lease expires on its own
shortly before the next scheduled cycle, so a crashed runner cannot block
polling for longer than one interval.

Per cycle the queue is walked in fixed-size batches. Fetches inside a batch
are started concurrently with a small stagger; the shared rate limiter in the
status client still serializes the outbound calls. For each entity the order
is strictly: read previous status, decide, write new status, dispatch.

"Went online" notifications wait for the grace period (see ``dedup``);
"went offline" notifications go out immediately. An ``unknown`` fetch is
skipped and simply read again next cycle; it is not an error. A cycle in which
more than ``max_cycle_errors`` entities raised skips its remaining batches.
"""

import asyncio
import time
import uuid

from presence_bot.config import (
    BATCH_SIZE,
    CLEANUP_INTERVAL_SECONDS,
    ENTITY_LINK_URL,
    LEASE_TTL_SECONDS,
    POLL_INTERVAL_SECONDS,
)
from presence_bot.conversation import ConversationStore
from presence_bot.dedup import NotificationDeduplicator
from presence_bot.logger import log_cycle, log_transition, logger
from presence_bot.models import (
    TRANSITION_OFFLINE,
    TRANSITION_ONLINE,
    CycleStats,
    EntityStatus,
)
from presence_bot.notifier import Transport, is_recipient_unreachable
from presence_bot.repository import SubscriptionRepository
from presence_bot.source import StatusSourceClient
from presence_bot.store import KVStore
from presence_bot.utils import escape_html, format_duration

LEASE_KEY = ("poll_lease",)

MAX_CYCLE_ERRORS = 5
MAX_CONSECUTIVE_SEND_ERRORS = 10
STAGGER_SECONDS = 0.2
BATCH_PAUSE_SECONDS = 1.0


def render_online_message(name: str, link_template: str = ENTITY_LINK_URL) -> str:
    link = link_template.format(name=name)
    return f'✅ <a href="{escape_html(link)}">{escape_html(name)}</a> is now <b>ONLINE</b>!'


def render_offline_message(
    name: str, online_for: float | None, link_template: str = ENTITY_LINK_URL
) -> str:
    link = link_template.format(name=name)
    duration = f" (Online for {format_duration(online_for)})" if online_for is not None else ""
    return (
        f'❌ <a href="{escape_html(link)}">{escape_html(name)}</a> '
        f"is now <b>OFFLINE</b>.{duration}"
    )


class JobRunner:
    def __init__(
        self,
        store: KVStore,
        repository: SubscriptionRepository,
        source: StatusSourceClient,
        dedup: NotificationDeduplicator,
        transport: Transport,
        batch_size: int = BATCH_SIZE,
        lease_ttl: float = LEASE_TTL_SECONDS,
        stagger: float = STAGGER_SECONDS,
        batch_pause: float = BATCH_PAUSE_SECONDS,
        max_cycle_errors: int = MAX_CYCLE_ERRORS,
        max_send_errors: int = MAX_CONSECUTIVE_SEND_ERRORS,
        link_template: str = ENTITY_LINK_URL,
    ):
        self._store = store
        self._repo = repository
        self._source = source
        self._dedup = dedup
        self._transport = transport
        self._batch_size = batch_size
        self._lease_ttl = lease_ttl
        self._stagger = stagger
        self._batch_pause = batch_pause
        self._max_cycle_errors = max_cycle_errors
        self._max_send_errors = max_send_errors
        self._link_template = link_template
        self.last_cycle: CycleStats | None = None

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    async def acquire_lease(self) -> str | None:
        """Take the cycle lease. Returns its token, or None if it is held."""
        token = uuid.uuid4().hex
        ok = await (
            self._store.atomic()
            .check(LEASE_KEY, None)
            .set(LEASE_KEY, token, expire_in=self._lease_ttl)
            .commit()
        )
        return token if ok else None

    async def release_lease(self, token: str) -> None:
        # Only delete our own lease; after expiry another runner may hold it.
        entry = await self._store.get(LEASE_KEY)
        if entry.value != token:
            logger.warning("[poller] Lease expired before the cycle finished")
            return
        await self._store.atomic().check(LEASE_KEY, entry.versionstamp).delete(LEASE_KEY).commit()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleStats:
        stats = CycleStats(started_at=time.time())

        token = await self.acquire_lease()
        if token is None:
            logger.info("[poller] Another cycle holds the lease, skipping")
            stats.outcome = "lease_denied"
            return stats

        try:
            await self._run(stats)
            if stats.outcome == "running":
                stats.outcome = "completed"
        except Exception:
            stats.outcome = "failed"
            logger.exception("[poller] Cycle failed")
        finally:
            try:
                await self.release_lease(token)
            except Exception:
                logger.exception("[poller] Could not release the cycle lease")
            stats.duration = time.time() - stats.started_at
            self.last_cycle = stats

        log_cycle(stats)
        return stats

    async def _run(self, stats: CycleStats) -> None:
        queue = await self._repo.get_queue()
        stats.queued = len(queue)
        if not queue:
            logger.debug("[poller] Queue is empty")
            return

        batches = [
            queue[i:i + self._batch_size]
            for i in range(0, len(queue), self._batch_size)
        ]
        for n, batch in enumerate(batches):
            if n > 0 and self._batch_pause:
                await asyncio.sleep(self._batch_pause)

            await asyncio.gather(*(
                self._check_entity(name, i * self._stagger, stats)
                for i, name in enumerate(batch)
            ))

            if stats.errors > self._max_cycle_errors:
                remaining = sum(len(b) for b in batches[n + 1:])
                logger.error(
                    f"[poller] {stats.errors} errors this cycle, "
                    f"skipping {remaining} remaining entities"
                )
                stats.outcome = "aborted"
                return

    async def _check_entity(self, name: str, delay: float, stats: CycleStats) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            current = await self._source.fetch_status(name)
            if current == "unknown":
                logger.warning(f"[poller] {name}: status unknown, skipping")
                stats.skipped_unknown += 1
                return
            stats.checked += 1
            await self.process_status(name, current, stats)
        except Exception:
            stats.errors += 1
            logger.exception(f"[poller] Error while processing {name}")

    async def process_status(self, name: str, current: str, stats: CycleStats) -> None:
        """Apply one fetched status for ``name``."""
        now = time.time()
        stored = await self._repo.get_status(name)
        previous = stored.status if stored else "offline"

        if current != previous:
            stats.transitions += 1
            if current == "online":
                await self._went_online(name, previous, now, stats)
            else:
                await self._went_offline(name, stored, now, stats)
        elif stored is None:
            await self._repo.update_status(name, EntityStatus.offline())
        elif current == "online":
            await self._notify_pending_online(name, stored, now, stats)

    async def _went_online(self, name: str, previous: str, now: float, stats: CycleStats) -> None:
        status = EntityStatus.online(now)
        await self._repo.update_status(name, status)
        subscribers = await self._repo.list_subscribers(name)
        log_transition(
            name, previous, "online", len(subscribers),
            detail=f"notifying after {self._dedup.grace_period:.0f}s grace period",
        )
        if self._dedup.grace_elapsed(status, now):
            await self._notify_pending_online(name, status, now, stats)

    async def _went_offline(
        self, name: str, stored: EntityStatus | None, now: float, stats: CycleStats
    ) -> None:
        online_for = None
        if stored is not None and stored.online_since is not None:
            online_for = now - stored.online_since

        await self._repo.update_status(name, EntityStatus.offline())
        subscribers = await self._repo.list_subscribers(name)
        log_transition(name, "online", "offline", len(subscribers))

        message = render_offline_message(name, online_for, self._link_template)
        await self._dispatch(name, TRANSITION_OFFLINE, sorted(subscribers), message, stats)

    async def _notify_pending_online(
        self, name: str, status: EntityStatus, now: float, stats: CycleStats
    ) -> None:
        subscribers = await self._repo.list_subscribers(name)
        owed = self._dedup.pending_online_recipients(status, subscribers, now)
        # Anyone told about a previous session inside the dedup window stays
        # owed and is picked up once the window has passed.
        recipients = [
            s for s in owed
            if not await self._dedup.is_recent_notification(s, name, TRANSITION_ONLINE)
        ]
        if not recipients:
            if owed:
                logger.debug(f"[poller] {name}: online notice deferred by dedup window for {owed}")
            return

        status.notified_users = sorted(set(status.notified_users) | set(recipients))
        status.last_notification_time = now
        if not await self._repo.update_status(name, status):
            return  # entity left the queue meanwhile

        message = render_online_message(name, self._link_template)
        failed = await self._dispatch(name, TRANSITION_ONLINE, recipients, message, stats)
        if failed:
            # Let transient failures be retried on the next cycle.
            status.notified_users = [u for u in status.notified_users if u not in failed]
            await self._repo.update_status(name, status)

    async def _dispatch(
        self,
        name: str,
        transition: str,
        recipients: list[int],
        message: str,
        stats: CycleStats,
    ) -> list[int]:
        """Send ``message`` to each recipient. Returns transiently failed ones."""
        logger.info(f"[poller] Notifying {len(recipients)} subscriber(s) about {name}")
        failed: list[int] = []
        consecutive = 0

        for i, subscriber in enumerate(recipients):
            if consecutive >= self._max_send_errors:
                logger.error(
                    f"[poller] {name}: {consecutive} consecutive delivery failures, "
                    f"skipping {len(recipients) - i} remaining subscriber(s) this cycle"
                )
                failed.extend(recipients[i:])
                break

            if await self._dedup.is_recent_notification(subscriber, name, transition):
                logger.debug(f"[poller] Skipping duplicate {transition} notice for {subscriber}/{name}")
                continue

            try:
                await self._transport.send_message(subscriber, message, parse_mode="HTML")
            except Exception as e:
                consecutive += 1
                if is_recipient_unreachable(e):
                    logger.warning(f"[poller] Subscriber {subscriber} is unreachable, purging: {e}")
                    await self._repo.remove_subscriber_everywhere(subscriber)
                else:
                    logger.error(f"[poller] Failed to notify {subscriber} about {name}: {e}")
                    failed.append(subscriber)
                continue

            consecutive = 0
            stats.notifications_sent += 1
            await self._dedup.record_notification(subscriber, name, transition)

        return failed


# ---------------------------------------------------------------------------
# Periodic triggers
# ---------------------------------------------------------------------------

async def poll_loop(runner: JobRunner, interval: float = POLL_INTERVAL_SECONDS) -> None:
    logger.info(f"[poller] Started, polling every {interval}s")
    while True:
        started = time.monotonic()
        try:
            await runner.run_cycle()
        except Exception as e:
            logger.error(f"[poller] Unexpected error: {e}")
        await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))


async def cleanup_loop(
    conversations: ConversationStore, interval: float = CLEANUP_INTERVAL_SECONDS
) -> None:
    logger.info(f"[cleanup] Started, sweeping conversation state every {interval}s")
    while True:
        try:
            await conversations.sweep_expired()
        except Exception as e:
            logger.error(f"[cleanup] Unexpected error: {e}")
        await asyncio.sleep(interval)
