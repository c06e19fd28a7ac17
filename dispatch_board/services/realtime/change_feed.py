"""
Date-scoped change feed.

Boards subscribe to the day they display and re-fetch when told that
deliveries of that day changed. Two transports:
- in-process observer (tests, single worker)
- Redis pub/sub, one channel per day, shared by all API workers
"""
import asyncio
import logging
from collections import defaultdict
from datetime import date
from typing import Optional

from redis.exceptions import RedisError

from dispatch_board.core.config import settings
from dispatch_board.core.redis import RedisClient, channel_for
from dispatch_board.models.change import ChangeNotification
from dispatch_board.stores.interfaces import ChangeCallback

logger = logging.getLogger(__name__)


async def _deliver(callback: ChangeCallback, notification: ChangeNotification) -> None:
    try:
        await callback(notification)
    except Exception as e:
        logger.error(f"Change callback failed for {notification.board_date}: {e}", exc_info=True)


class InMemorySubscription:
    def __init__(self, feed: "InMemoryChangeFeed", day: date, callback: ChangeCallback):
        self.feed = feed
        self.day = day
        self.callback = callback

    async def unsubscribe(self) -> None:
        callbacks = self.feed.subscribers.get(self.day, [])
        if self.callback in callbacks:
            callbacks.remove(self.callback)
        if not callbacks:
            self.feed.subscribers.pop(self.day, None)


class InMemoryChangeFeed:
    """Observer fan-out inside one process."""

    def __init__(self):
        self.subscribers: dict[date, list[ChangeCallback]] = defaultdict(list)
        self.published: int = 0

    async def subscribe(self, day: date, callback: ChangeCallback) -> InMemorySubscription:
        self.subscribers[day].append(callback)
        return InMemorySubscription(self, day, callback)

    async def publish(self, notification: ChangeNotification) -> None:
        self.published += 1
        for callback in list(self.subscribers.get(notification.board_date, [])):
            await _deliver(callback, notification)


class RedisSubscription:
    """One pub/sub connection listening to one day's channel."""

    def __init__(self, pubsub, channel: str, callback: ChangeCallback):
        self.pubsub = pubsub
        self.channel = channel
        self.callback = callback
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._listen())

    async def unsubscribe(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        try:
            await self.pubsub.unsubscribe(self.channel)
            await self.pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Redis unsubscribe from {self.channel} failed: {e}")

    async def _listen(self) -> None:
        while True:
            try:
                message = await self.pubsub.get_message(timeout=1.0)
                if message is None or message.get("type") != "message":
                    continue
                notification = ChangeNotification.from_json(message["data"])
                await _deliver(self.callback, notification)
            except asyncio.CancelledError:
                break
            except (ValueError, KeyError) as e:
                logger.warning(f"Ignoring malformed change notification on {self.channel}: {e}")
            except RedisError as e:
                logger.warning(f"Change feed connection error on {self.channel}: {e}")
                await asyncio.sleep(1.0)


class RedisChangeFeed:
    """Change feed over Redis pub/sub (channel ``deliveries:{date}``)."""

    def __init__(self, client: Optional[RedisClient] = None):
        self.client = client or RedisClient()

    async def subscribe(self, day: date, callback: ChangeCallback) -> RedisSubscription:
        channel = channel_for(day)
        pubsub = await self.client.pubsub()
        await pubsub.subscribe(channel)
        subscription = RedisSubscription(pubsub, channel, callback)
        subscription.start()
        logger.debug(f"Subscribed to {channel}")
        return subscription

    async def publish(self, notification: ChangeNotification) -> None:
        channel = channel_for(notification.board_date)
        try:
            await self.client.publish(channel, notification.to_json())
        except RedisError as e:
            # Boards still converge through polling
            logger.warning(f"Could not publish change on {channel}: {e}")

    async def health_check(self) -> bool:
        return await self.client.health_check()

    async def close(self) -> None:
        await self.client.close()


def create_change_feed(kind: Optional[str] = None):
    """Build the feed selected by ``CHANGE_FEED``."""
    kind = kind or settings.CHANGE_FEED
    if kind == "redis":
        return RedisChangeFeed()
    return InMemoryChangeFeed()
