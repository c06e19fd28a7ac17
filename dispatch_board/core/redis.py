"""
Redis client for the change feed.
"""
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.client import PubSub

from dispatch_board.core.config import settings


class RedisClient:
    """Async Redis client shared by publishers and subscribers."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._client: Optional[redis.Redis] = None

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def publish(self, channel: str, message: str) -> int:
        """Publish to a channel; returns the number of receivers."""
        client = await self.get_client()
        return await client.publish(channel, message)

    async def pubsub(self) -> PubSub:
        client = await self.get_client()
        return client.pubsub(ignore_subscribe_messages=True)

    async def health_check(self) -> bool:
        """Check if Redis is available."""
        try:
            client = await self.get_client()
            await client.ping()
            return True
        except redis.RedisError:
            return False


def channel_for(board_date) -> str:
    """Pub/sub channel carrying changes of one delivery day."""
    return f"{settings.CHANGE_FEED_CHANNEL_PREFIX}:{board_date.isoformat()}"
