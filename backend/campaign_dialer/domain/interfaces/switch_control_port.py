"""
Switch Control Port Interface
Abstract base class for telephony switch control protocols
"""
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from campaign_dialer.domain.models.switch_event import OriginateRequest, SwitchEvent


SwitchEventHandler = Callable[[SwitchEvent], Awaitable[None]]


class SwitchControlPort(ABC):
    """
    Contract the dialing engine needs from the switch.

    Implementations raise SwitchError when the switch is unreachable or
    rejects a request, and deliver progress events to every subscribed
    handler on the event loop.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the control connection"""
        pass

    @abstractmethod
    async def originate(self, request: OriginateRequest) -> str:
        """
        Request an outbound connection.

        Not idempotent: a retry must use a fresh correlation handle.

        Returns:
            Acknowledgement identifier from the switch
        """
        pass

    @abstractmethod
    async def redirect(
        self,
        channel_id: str,
        context: str,
        extension: str = "s",
        priority: int = 1
    ) -> None:
        """Move an established connection into another dialplan context"""
        pass

    @abstractmethod
    async def hangup(self, channel_id: str) -> None:
        """Tear down an established connection"""
        pass

    @abstractmethod
    def subscribe(self, handler: SwitchEventHandler) -> None:
        """Register a handler for inbound progress events"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
