"""
Notification Buses
Publish live campaign events to operator consoles
"""
import json
import logging
from typing import List, Optional

import redis.asyncio as redis

from campaign_dialer.domain.interfaces.notification_bus import NotificationBus
from campaign_dialer.domain.models.notification import Notification

logger = logging.getLogger(__name__)


class RedisNotificationBus(NotificationBus):
    """
    Publishes notifications as JSON on a Redis pub/sub channel.

    Consoles subscribe to the channel; nobody listening is not an error.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel: str = "dialer:notifications",
        redis_client=None
    ):
        self._redis_url = redis_url
        self._channel = channel
        self._redis = redis_client
        self._published = 0
        self._failed = 0

    @classmethod
    def from_settings(cls, settings) -> "RedisNotificationBus":
        return cls(redis_url=settings.redis_url, channel=settings.notification_channel)

    async def initialize(self) -> None:
        """Connect to Redis if no client was injected."""
        if self._redis is not None:
            return
        self._redis = await redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await self._redis.ping()
        logger.info(f"Notification bus connected to Redis: {self._redis_url}")

    async def publish(self, notification: Notification) -> None:
        if self._redis is None:
            self._failed += 1
            logger.warning(f"Notification bus not initialized, dropping {notification.kind.value}")
            return
        try:
            receivers = await self._redis.publish(self._channel, json.dumps(notification.to_message()))
            self._published += 1
            logger.debug(f"Published {notification.kind.value} to {receivers} subscribers")
        except Exception as e:
            self._failed += 1
            logger.error(f"Failed to publish {notification.kind.value}: {e}")

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None

    def get_stats(self) -> dict:
        return {"channel": self._channel, "published": self._published, "failed": self._failed}


class InMemoryNotificationBus(NotificationBus):
    """Keeps published notifications in a list; for local runs and tests"""

    def __init__(self, limit: Optional[int] = None):
        self._limit = limit
        self.notifications: List[Notification] = []

    async def publish(self, notification: Notification) -> None:
        self.notifications.append(notification)
        if self._limit is not None and len(self.notifications) > self._limit:
            del self.notifications[0]
        logger.debug(f"Notification: {notification.kind.value} task={notification.task_id}")

    async def close(self) -> None:
        self.notifications.clear()

    def of_kind(self, kind) -> List[Notification]:
        return [n for n in self.notifications if n.kind == kind]
