import os

import pytest
from fastapi.testclient import TestClient

# No bot token and no real polling during tests.
os.environ["TELEGRAM_TOKEN"] = ""
os.environ["POLL_INTERVAL_SECONDS"] = "999999"
os.environ["LOG_FORMAT"] = "pretty"

from presence_bot.cache import StatusCache  # noqa: E402
from presence_bot.dedup import NotificationDeduplicator  # noqa: E402
from presence_bot.main import Services, app, get_services  # noqa: E402
from presence_bot.conversation import ConversationStore  # noqa: E402
from presence_bot.notifier import DeliveryError  # noqa: E402
from presence_bot.poller import JobRunner  # noqa: E402
from presence_bot.repository import SubscriptionRepository  # noqa: E402
from presence_bot.store import MemoryStore  # noqa: E402


class FakeSource:
    """Status source returning canned results."""

    def __init__(self, statuses: dict[str, str] | None = None):
        self.statuses = statuses or {}
        self.calls: list[str] = []

    async def fetch_status(self, name: str) -> str:
        self.calls.append(name)
        return self.statuses.get(name, "unknown")


class FakeTransport:
    """Records sent messages; ``failures`` maps subscriber -> exception."""

    def __init__(self):
        self.sent: list[tuple[int, str]] = []
        self.attempts: list[int] = []
        self.failures: dict[int, Exception] = {}

    async def send_message(self, subscriber: int, text: str, parse_mode: str = "HTML") -> None:
        self.attempts.append(subscriber)
        if subscriber in self.failures:
            raise self.failures[subscriber]
        self.sent.append((subscriber, text))

    def sent_to(self) -> list[int]:
        return [s for s, _ in self.sent]


def blocked_error(subscriber: int) -> DeliveryError:
    return DeliveryError(subscriber, 403, "Forbidden: bot was blocked by the user")


def flaky_error(subscriber: int) -> DeliveryError:
    return DeliveryError(subscriber, 502, "Bad Gateway")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return StatusCache()


@pytest.fixture
def repo(store, cache):
    return SubscriptionRepository(store, cache, max_jitter=0)


@pytest.fixture
def dedup(store):
    return NotificationDeduplicator(store)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def runner(store, repo, source, dedup, transport):
    return JobRunner(
        store=store,
        repository=repo,
        source=source,
        dedup=dedup,
        transport=transport,
        stagger=0,
        batch_pause=0,
    )


@pytest.fixture
def services(store, cache, repo, runner):
    return Services(
        cache=cache,
        repository=repo,
        conversations=ConversationStore(store),
        runner=runner,
    )


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def clock():
    """Controllable wall clock, used as ``patch("time.time", clock)``."""
    return Clock(1_700_000_000.0)


class Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
