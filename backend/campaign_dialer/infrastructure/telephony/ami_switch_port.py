"""
Asterisk Manager Interface Switch Port
Places, redirects and hangs up campaign calls over AMI
"""
import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional

from asterisk.ami import AMIClient, SimpleAction

from campaign_dialer.domain.exceptions import SwitchError
from campaign_dialer.domain.interfaces.switch_control_port import SwitchControlPort, SwitchEventHandler
from campaign_dialer.domain.models.campaign_task import CallOutcome
from campaign_dialer.domain.models.switch_event import OriginateRequest, SwitchEvent, SwitchEventType

logger = logging.getLogger(__name__)


# Dial() result codes reported in DialEnd
DIAL_STATUS_OUTCOMES: Dict[str, CallOutcome] = {
    "ANSWER": CallOutcome.ANSWERED,
    "BUSY": CallOutcome.BUSY,
    "NOANSWER": CallOutcome.NO_ANSWER,
    "NO ANSWER": CallOutcome.NO_ANSWER,
    "CANCEL": CallOutcome.NO_ANSWER,
    "CONGESTION": CallOutcome.CONGESTION,
    "CHANUNAVAIL": CallOutcome.CONGESTION,
}

# OriginateResponse Reason codes (channel state when the originate settled)
ORIGINATE_REASON_ANSWERED = "4"

ORIGINATE_REASON_OUTCOMES: Dict[str, CallOutcome] = {
    "3": CallOutcome.NO_ANSWER,
    "5": CallOutcome.BUSY,
    "8": CallOutcome.CONGESTION,
}

SUBSCRIBED_EVENTS = ["OriginateResponse", "DialEnd", "Hangup"]


def _field(keys: Mapping[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup; AMI header casing varies by version."""
    if name in keys:
        value = keys[name]
    else:
        lowered = name.lower()
        value = next((v for k, v in keys.items() if k.lower() == lowered), None)
    if value in (None, "", "<null>", "<unknown>"):
        return None
    return str(value)


def to_switch_event(name: str, keys: Mapping[str, Any]) -> Optional[SwitchEvent]:
    """
    Normalize an AMI manager event.

    Returns None for events the dialing engine does not consume.
    """
    if name == "OriginateResponse":
        success = (_field(keys, "Response") or "").lower() == "success"
        reason = _field(keys, "Reason")
        outcome = None
        if not success:
            outcome = ORIGINATE_REASON_OUTCOMES.get(reason or "", CallOutcome.ERROR)
        elif reason == ORIGINATE_REASON_ANSWERED:
            # Async originate reports the answer here; no caller-side DialEnd follows
            outcome = CallOutcome.ANSWERED
        return SwitchEvent(
            type=SwitchEventType.ACKNOWLEDGED,
            correlation_handle=_field(keys, "ActionID"),
            channel_id=_field(keys, "Channel"),
            connection_id=_field(keys, "Uniqueid"),
            success=success,
            outcome=outcome,
            cause=reason,
        )

    if name == "DialEnd":
        status = (_field(keys, "DialStatus") or "").upper()
        return SwitchEvent(
            type=SwitchEventType.DIAL_OUTCOME,
            # Originated channels have no caller side; only the Dest* headers are set
            connection_id=_field(keys, "Uniqueid") or _field(keys, "DestUniqueid"),
            channel_id=_field(keys, "Channel") or _field(keys, "DestChannel"),
            outcome=DIAL_STATUS_OUTCOMES.get(status, CallOutcome.ERROR),
            cause=status or None,
        )

    if name == "Hangup":
        return SwitchEvent(
            type=SwitchEventType.ENDED,
            connection_id=_field(keys, "Uniqueid"),
            channel_id=_field(keys, "Channel"),
            cause=_field(keys, "Cause-txt") or _field(keys, "Cause"),
        )

    return None


class AmiSwitchPort(SwitchControlPort):
    """
    Switch Control Port over the Asterisk Manager Interface.

    The AMI client is blocking and delivers events on its own thread.
    Actions run in the default executor; events are normalized on the
    client thread and handed to the event loop through a queue, so
    handlers see them in arrival order.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5038,
        username: str = "admin",
        secret: str = "",
        action_timeout: float = 5.0,
        client_factory: Callable[..., AMIClient] = AMIClient,
    ):
        self._host = host
        self._port = port
        self._username = username
        self._secret = secret
        self._action_timeout = action_timeout
        self._client_factory = client_factory

        self._client: Optional[AMIClient] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._handlers: List[SwitchEventHandler] = []

    @classmethod
    def from_settings(cls, settings) -> "AmiSwitchPort":
        return cls(
            host=settings.ami_host,
            port=settings.ami_port,
            username=settings.ami_username,
            secret=settings.ami_secret,
        )

    @property
    def name(self) -> str:
        return "ami"

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        if self._client is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        client = self._client_factory(address=self._host, port=self._port, timeout=self._action_timeout)

        try:
            response = await self._loop.run_in_executor(None, partial(self._login, client))
        except Exception as e:
            raise SwitchError(f"AMI connection to {self._host}:{self._port} failed: {e}") from e
        if response is None or response.is_error():
            raise SwitchError(f"AMI login rejected for user {self._username}")

        client.add_event_listener(self._on_ami_event, white_list=SUBSCRIBED_EVENTS)
        self._client = client
        self._consumer = asyncio.create_task(self._dispatch_events())
        logger.info(f"AMI connected to {self._host}:{self._port}")

    def _login(self, client: AMIClient):
        future = client.login(username=self._username, secret=self._secret)
        return future.response

    async def originate(self, request: OriginateRequest) -> str:
        keys = {
            "Channel": request.channel,
            "Context": request.context,
            "Exten": request.extension,
            "Priority": request.priority,
            "CallerID": request.caller_id,
            "ActionID": request.correlation_handle,
            "Timeout": request.timeout_seconds * 1000,
            "Async": "true",
        }
        if request.variables:
            keys["Variable"] = ",".join(f"{k}={v}" for k, v in request.variables.items())

        await self._send(SimpleAction("Originate", **keys))
        logger.debug(f"Originate queued: channel={request.channel} handle={request.correlation_handle}")
        return request.correlation_handle

    async def redirect(self, channel_id: str, context: str, extension: str = "s", priority: int = 1) -> None:
        await self._send(SimpleAction(
            "Redirect",
            Channel=channel_id,
            Context=context,
            Exten=extension,
            Priority=priority,
        ))
        logger.info(f"Redirected {channel_id} -> {context},{extension},{priority}")

    async def hangup(self, channel_id: str) -> None:
        await self._send(SimpleAction("Hangup", Channel=channel_id))
        logger.info(f"Hangup requested for {channel_id}")

    def subscribe(self, handler: SwitchEventHandler) -> None:
        self._handlers.append(handler)

    async def disconnect(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

        client, self._client = self._client, None
        if client is None:
            return
        try:
            await asyncio.get_running_loop().run_in_executor(None, partial(self._logoff, client))
        except Exception as e:
            logger.warning(f"AMI logoff failed: {e}")
        logger.info("AMI disconnected")

    @staticmethod
    def _logoff(client: AMIClient) -> None:
        client.logoff()
        client.disconnect()

    async def _send(self, action: SimpleAction):
        if self._client is None:
            raise SwitchError("AMI client is not connected")
        try:
            response = await asyncio.get_running_loop().run_in_executor(
                None, partial(self._send_blocking, self._client, action)
            )
        except SwitchError:
            raise
        except Exception as e:
            raise SwitchError(f"AMI {action.name} failed: {e}") from e
        return response

    @staticmethod
    def _send_blocking(client: AMIClient, action: SimpleAction):
        response = client.send_action(action).response
        if response is None:
            raise SwitchError(f"AMI {action.name} timed out")
        if response.is_error():
            message = _field(response.keys, "Message") or response.status
            raise SwitchError(f"AMI {action.name} rejected: {message}")
        return response

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _on_ami_event(self, event, **kwargs) -> None:
        """Runs on the AMI client thread."""
        switch_event = to_switch_event(event.name, event.keys)
        if switch_event is None or self._loop is None or self._events is None:
            return
        self._loop.call_soon_threadsafe(self._events.put_nowait, switch_event)

    async def _dispatch_events(self) -> None:
        while True:
            event = await self._events.get()
            for handler in list(self._handlers):
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Switch event handler failed for {event.type.value}: {e}", exc_info=True)
