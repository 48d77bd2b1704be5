"""
Notification Bus Interface
"""
from abc import ABC, abstractmethod

from campaign_dialer.domain.models.notification import Notification


class NotificationBus(ABC):
    """Fire-and-forget publisher for operator consoles"""

    async def initialize(self) -> None:
        """Open connections; buses without any keep the default"""
        pass

    @abstractmethod
    async def publish(self, notification: Notification) -> None:
        """Publish a notification. Implementations must not raise."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
