"""Tests for subscriptions, the queue invariant and status records."""

import random

import pytest

from presence_bot.cache import StatusCache
from presence_bot.models import EntityStatus
from presence_bot.repository import QUEUE_KEY, SubscriptionRepository
from presence_bot.store import MemoryStore, _MemoryAtomic


class ConflictingStore(MemoryStore):
    """Fails the next ``conflicts`` checked commits as if another writer won."""

    def __init__(self, conflicts: int = 0):
        super().__init__()
        self.conflicts = conflicts
        self.rejected = 0

    def atomic(self):
        store = self

        class _Atomic(_MemoryAtomic):
            async def commit(self) -> bool:
                if self._checks and store.conflicts > 0:
                    store.conflicts -= 1
                    store.rejected += 1
                    return False
                return await super().commit()

        return _Atomic(self)


async def assert_queue_invariant(repo: SubscriptionRepository, names: set[str]) -> None:
    queue = await repo.get_queue()
    assert len(queue) == len(set(queue))
    for name in names:
        has_subscribers = bool(await repo.list_subscribers(name))
        assert (name in queue) == has_subscribers, name


@pytest.mark.asyncio
async def test_subscribe_records_relation_and_queue(repo):
    assert await repo.subscribe(1, "  Alice ") == "alice"
    await repo.drain()

    assert await repo.list_subscriptions(1) == {"alice"}
    assert await repo.list_subscribers("alice") == {1}
    assert await repo.get_queue() == ["alice"]
    assert await repo.all_user_ids() == [1]


@pytest.mark.asyncio
async def test_subscribe_invalid_name_is_noop(repo, store):
    assert await repo.subscribe(1, " <> ") is None
    await repo.drain()
    assert store.size == 0


@pytest.mark.asyncio
async def test_subscribe_twice_is_idempotent(repo):
    await repo.subscribe(1, "alice")
    await repo.subscribe(1, "ALICE")
    await repo.drain()

    assert await repo.list_subscriptions(1) == {"alice"}
    assert await repo.list_subscribers("alice") == {1}
    assert await repo.get_queue() == ["alice"]


@pytest.mark.asyncio
async def test_unsubscribe_last_subscriber_removes_entity(repo, store):
    await repo.subscribe(1, "alice")
    await repo.drain()
    await repo.update_status("alice", EntityStatus.online(1000.0))

    await repo.unsubscribe(1, "alice")

    assert await repo.get_queue() == []
    assert await repo.get_status("alice") is None
    assert (await store.get(("statuses", "alice"))).value is None


@pytest.mark.asyncio
async def test_unsubscribe_keeps_entity_with_other_subscribers(repo):
    await repo.subscribe(1, "alice")
    await repo.subscribe(2, "alice")
    await repo.drain()

    await repo.unsubscribe(1, "alice")

    assert await repo.get_queue() == ["alice"]
    assert await repo.list_subscribers("alice") == {2}


@pytest.mark.asyncio
async def test_unsubscribe_before_queue_insertion_runs(repo):
    await repo.subscribe(1, "alice")
    await repo.unsubscribe(1, "alice")
    await repo.drain()

    assert await repo.get_queue() == []


@pytest.mark.asyncio
async def test_invariant_holds_under_cas_conflicts():
    store = ConflictingStore()
    repo = SubscriptionRepository(store, StatusCache(), max_attempts=5, max_jitter=0)
    names = {"alice", "bob", "carol"}
    rng = random.Random(7)

    for _ in range(60):
        # Up to 4 conflicts in a row stays within the 5 attempt budget.
        store.conflicts = rng.randint(0, 4)
        subscriber = rng.randint(1, 4)
        name = rng.choice(sorted(names))
        if rng.random() < 0.6:
            await repo.subscribe(subscriber, name)
        else:
            await repo.unsubscribe(subscriber, name)
        await repo.drain()
        await assert_queue_invariant(repo, names)

    assert store.rejected > 0


@pytest.mark.asyncio
async def test_exhausted_retries_do_not_raise():
    store = ConflictingStore(conflicts=100)
    repo = SubscriptionRepository(store, StatusCache(), max_attempts=3, max_jitter=0)

    await repo.subscribe(1, "alice")
    await repo.drain()

    # Relation is durable; the queue insertion was abandoned.
    assert await repo.list_subscribers("alice") == {1}
    assert await repo.get_queue() == []


@pytest.mark.asyncio
async def test_remove_subscriber_everywhere(repo, store):
    await repo.subscribe(1, "alice")
    await repo.subscribe(1, "bob")
    await repo.subscribe(2, "bob")
    await repo.drain()
    await store.set(("conversation_states", 1), {"action": "x", "expires_at": 0})

    await repo.remove_subscriber_everywhere(1)

    assert await repo.list_subscriptions(1) == set()
    assert await repo.get_queue() == ["bob"]
    assert await repo.all_user_ids() == [2]
    assert (await store.get(("conversation_states", 1))).value is None


@pytest.mark.asyncio
async def test_update_status_skips_removed_entity(repo, store):
    written = await repo.update_status("ghost", EntityStatus.offline())
    assert written is False
    assert (await store.get(("statuses", "ghost"))).value is None


@pytest.mark.asyncio
async def test_get_status_reads_through_cache(repo, store):
    await repo.subscribe(1, "alice")
    await repo.drain()
    await repo.update_status("alice", EntityStatus.online(1000.0))

    # Writes behind the cache's back stay invisible until the TTL passes.
    await store.set(("statuses", "alice"), EntityStatus.offline().model_dump())
    status = await repo.get_status("alice")
    assert status.status == "online"


@pytest.mark.asyncio
async def test_migrate_statuses_backfills_legacy_records(repo, store):
    await repo.subscribe(1, "alice")
    await repo.subscribe(2, "alice")
    await repo.subscribe(1, "bob")
    await repo.subscribe(1, "carol")
    await repo.drain()

    await store.set(("statuses", "alice"), {"status": "online", "online_since": 1_700_000_000_000})
    await store.set(("statuses", "bob"), {"status": "offline", "online_since": None})
    await store.set(("statuses", "carol"), "online")

    assert await repo.migrate_statuses() == 3

    alice = EntityStatus.model_validate((await store.get(("statuses", "alice"))).value)
    assert alice.online_since == 1_700_000_000
    assert alice.notified_users == [1, 2]
    bob = EntityStatus.model_validate((await store.get(("statuses", "bob"))).value)
    assert bob.status == "offline"
    assert bob.notified_users == []
    carol = EntityStatus.model_validate((await store.get(("statuses", "carol"))).value)
    assert carol.status == "online"
    assert carol.online_since is not None

    # Idempotent.
    assert await repo.migrate_statuses() == 0


@pytest.mark.asyncio
async def test_migrate_backfills_missing_revision_keys(repo, store):
    await store.set(QUEUE_KEY, ["legacy"])
    await store.set(("subscribers", "legacy", 1), True)

    await repo.migrate_statuses()

    assert await repo.update_status("legacy", EntityStatus.offline()) is True
