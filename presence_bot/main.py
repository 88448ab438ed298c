import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request

from presence_bot.cache import StatusCache
from presence_bot.config import TELEGRAM_TOKEN
from presence_bot.conversation import ConversationStore
from presence_bot.dedup import NotificationDeduplicator
from presence_bot.logger import logger
from presence_bot.models import SubscriptionChange, SubscriptionList
from presence_bot.notifier import LogTransport, TelegramTransport, Transport
from presence_bot.poller import JobRunner, cleanup_loop, poll_loop
from presence_bot.repository import SubscriptionRepository
from presence_bot.source import StatusSourceClient
from presence_bot.store import KVStore, MemoryStore


@dataclass
class Services:
    cache: StatusCache
    repository: SubscriptionRepository
    conversations: ConversationStore
    runner: JobRunner


def build_services(
    client: httpx.AsyncClient,
    store: KVStore | None = None,
    transport: Transport | None = None,
    source: StatusSourceClient | None = None,
) -> Services:
    store = store or MemoryStore()
    cache = StatusCache()
    repository = SubscriptionRepository(store, cache)
    if transport is None:
        transport = TelegramTransport(client, TELEGRAM_TOKEN) if TELEGRAM_TOKEN else LogTransport()
    runner = JobRunner(
        store=store,
        repository=repository,
        source=source or StatusSourceClient(client),
        dedup=NotificationDeduplicator(store),
        transport=transport,
    )
    return Services(
        cache=cache,
        repository=repository,
        conversations=ConversationStore(store),
        runner=runner,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with httpx.AsyncClient() as client:
        services = build_services(client)
        if not TELEGRAM_TOKEN:
            logger.warning("TELEGRAM_TOKEN not set, notifications will only be logged")
        await services.repository.migrate_statuses()
        app.state.services = services

        tasks = [
            asyncio.create_task(poll_loop(services.runner)),
            asyncio.create_task(cleanup_loop(services.conversations)),
        ]
        yield
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await services.repository.drain()


app = FastAPI(title="Presence Bot", lifespan=lifespan)


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.get("/health")
async def health(services: Services = Depends(get_services)):
    return {"status": "ok", "cache_size": services.cache.size}


@app.get("/stats")
async def stats(services: Services = Depends(get_services)):
    last = services.runner.last_cycle
    return {
        "users": len(await services.repository.all_user_ids()),
        "tracked": len(await services.repository.get_queue()),
        "cache_size": services.cache.size,
        "last_cycle": last.model_dump() if last else None,
    }


@app.get("/subscriptions/{subscriber}", response_model=SubscriptionList)
async def list_subscriptions(subscriber: int, services: Services = Depends(get_services)):
    entities = await services.repository.list_subscriptions(subscriber)
    return SubscriptionList(subscriber=subscriber, entities=sorted(entities))


@app.put("/subscriptions/{subscriber}/{name}", response_model=SubscriptionChange)
async def subscribe(subscriber: int, name: str, services: Services = Depends(get_services)):
    entity = await services.repository.subscribe(subscriber, name)
    if entity is None:
        raise HTTPException(status_code=422, detail="invalid name")
    logger.info(f"Subscriber {subscriber} subscribed to {entity}")
    return SubscriptionChange(subscriber=subscriber, entity=entity, subscribed=True)


@app.delete("/subscriptions/{subscriber}/{name}", response_model=SubscriptionChange)
async def unsubscribe(subscriber: int, name: str, services: Services = Depends(get_services)):
    entity = await services.repository.unsubscribe(subscriber, name)
    if entity is None:
        raise HTTPException(status_code=422, detail="invalid name")
    logger.info(f"Subscriber {subscriber} unsubscribed from {entity}")
    return SubscriptionChange(subscriber=subscriber, entity=entity, subscribed=False)
