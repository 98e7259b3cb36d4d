"""
config/redis_client.py
Async Redis client for the JWT deny-list and notification pub/sub.
"""

import json
from typing import Any, AsyncIterator, Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RedisChannels:
    """Thin helpers over the client for token revocation and pub/sub."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    # ── Pub/Sub ───────────────────────────────────────────────
    async def publish(self, channel: str, payload: dict) -> int:
        return await self.client.publish(channel, json.dumps(payload, default=str))

    async def listen(self, channel: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages published on `channel` until cancelled."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield json.loads(message["data"])
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
