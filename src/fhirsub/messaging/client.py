"""
Shared Redis connection for fhirsub workers.

One connection serves the bridge's pub/sub traffic and the subscription id
counter. Responses are decoded to str.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Lazily connected Redis wrapper.

    Usage:
        client = RedisClient("redis://redis:6379/0")
        await client.connect()

        next_id = await client.incr("fhirsub:subscription:id")
        await client.publish("fhirsub.resource.written", payload)
        await client.disconnect()
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    @property
    def redis(self) -> aioredis.Redis:
        """The live connection; connect() must have been awaited."""
        if self._redis is None:
            raise RuntimeError(f"Not connected to {self.redis_url}; await connect() first")
        return self._redis

    async def connect(self) -> None:
        if self._redis is not None:
            return
        redis = aioredis.from_url(self.redis_url, decode_responses=True)
        await redis.ping()
        self._redis = redis
        logger.info(f"Redis connected at {self.redis_url}")

    async def disconnect(self) -> None:
        if self._redis is None:
            return
        redis, self._redis = self._redis, None
        await redis.aclose()
        logger.info("Redis connection closed")

    # === Counter ===

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.redis.set(key, value)

    async def incr(self, key: str) -> int:
        """Atomically increment a counter shared by all workers."""
        return await self.redis.incr(key)

    # === Pub/Sub ===

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message.

        Returns:
            Number of workers subscribed to the channel when it was sent
        """
        return await self.redis.publish(channel, message)

    def pubsub(self) -> aioredis.client.PubSub:
        return self.redis.pubsub()
