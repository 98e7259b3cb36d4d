"""
services/notification/events.py
Live notification fan-out.

Any API instance can publish to any connected client through Redis pub/sub.
When Redis is not initialised (single process, tests) the in-process broker
with one asyncio.Queue per open stream is used instead.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Protocol

import redis.asyncio as aioredis

from config.redis_client import RedisChannels
from config.settings import settings

logger = logging.getLogger(__name__)


class EventBroker(Protocol):
    async def publish(self, user_id: str, event: dict[str, Any]) -> int: ...

    def subscribe(self, user_id: str) -> AsyncIterator[dict[str, Any]]: ...


def channel_for(user_id: str) -> str:
    return f"{settings.EVENTS_CHANNEL_PREFIX}:{user_id}"


class LocalEventBroker:
    """Process-local broker. Events reach only streams opened on this process."""

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._max_queue_size = max_queue_size

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    async def publish(self, user_id: str, event: dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(user_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropping live event for slow subscriber {user_id}")
        return delivered

    async def subscribe(self, user_id: str) -> AsyncIterator[dict[str, Any]]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[user_id].add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[user_id].discard(queue)
            if not self._subscribers[user_id]:
                del self._subscribers[user_id]


class RedisEventBroker:
    def __init__(self, client: aioredis.Redis):
        self.channels = RedisChannels(client)

    async def publish(self, user_id: str, event: dict[str, Any]) -> int:
        return await self.channels.publish(channel_for(user_id), event)

    async def subscribe(self, user_id: str) -> AsyncIterator[dict[str, Any]]:
        async for event in self.channels.listen(channel_for(user_id)):
            yield event


local_broker = LocalEventBroker()


def get_event_broker() -> EventBroker:
    """FastAPI dependency: Redis-backed broker when available, else the local one."""
    from config.redis_client import redis_client

    if redis_client is not None:
        return RedisEventBroker(redis_client)
    return local_broker
