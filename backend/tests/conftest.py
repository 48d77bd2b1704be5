"""
Shared fixtures: in-memory adapters and a scripted switch
"""
import asyncio
import itertools
import re
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from campaign_dialer.core.engine import build_engine
from campaign_dialer.domain.exceptions import SwitchError
from campaign_dialer.domain.interfaces.switch_control_port import SwitchControlPort
from campaign_dialer.domain.models.campaign import Campaign, CampaignStatus, DefaultHandling
from campaign_dialer.domain.models.campaign_task import CallOutcome, CampaignTask
from campaign_dialer.domain.models.switch_event import OriginateRequest, SwitchEvent, SwitchEventType
from campaign_dialer.infrastructure.notifications.redis_notification_bus import InMemoryNotificationBus
from campaign_dialer.infrastructure.storage.memory import InMemoryBillingLedger, InMemoryTaskStore


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# Script steps besides plain CallOutcome values
ORIGINATE_ERROR = "originate_error"  # switch rejects the request
CRASH = "crash"                      # unexpected exception from the port
ACK_FAILURE = "ack_failure"          # switch gives up before any connection
SILENT = "silent"                    # acknowledged, then nothing
EARLY = "early"                      # answer reported before the acknowledgement


class FakeSwitchPort(SwitchControlPort):
    """
    Scripted switch.

    Every accepted originate plays acknowledgement -> dial outcome -> ended
    to the subscribed handlers. `script` maps a dialed number to the steps
    for successive attempts; the last step repeats.
    """

    def __init__(
        self,
        script: Optional[Dict[str, List[Any]]] = None,
        default: Any = CallOutcome.ANSWERED,
        step_delay: float = 0.005,
        call_duration: float = 0.02,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.script = script or {}
        self.default = default
        self.step_delay = step_delay
        self.call_duration = call_duration
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.originated: List[OriginateRequest] = []
        self.attempt_times: Dict[str, List[float]] = defaultdict(list)
        self.redirects: List[tuple] = []
        self.hangups: List[str] = []
        self.hold: Optional[asyncio.Event] = None
        self.fail_redirect = False

        self.active = 0
        self.peak_active = 0
        self.connected = False
        self._handlers = []
        self._seq = itertools.count(1)
        self._calls: set = set()
        self._release: Dict[str, asyncio.Event] = {}

    @property
    def name(self) -> str:
        return "fake"

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        await self.wait_idle()

    def subscribe(self, handler) -> None:
        self._handlers.append(handler)

    @staticmethod
    def number_of(request: OriginateRequest) -> str:
        match = re.match(r"^(?:SIP/[^/]+/|Local/)([^@]+)", request.channel)
        return match.group(1) if match else request.channel

    def _step(self, number: str, attempt: int) -> Any:
        steps = self.script.get(number)
        if steps is None:
            return self.default
        if not isinstance(steps, list):
            return steps
        return steps[min(attempt, len(steps) - 1)]

    async def originate(self, request: OriginateRequest) -> str:
        number = self.number_of(request)
        attempt = len(self.attempt_times[number])
        self.attempt_times[number].append(asyncio.get_running_loop().time())
        step = self._step(number, attempt)

        if step == ORIGINATE_ERROR:
            raise SwitchError("originate rejected")
        if step == CRASH:
            raise RuntimeError("transport exploded")

        self.originated.append(request)
        call = asyncio.create_task(self._play(request, step))
        self._calls.add(call)
        call.add_done_callback(self._calls.discard)
        return request.correlation_handle

    async def _play(self, request: OriginateRequest, step: Any) -> None:
        n = next(self._seq)
        connection_id = f"conn-{n}"
        channel_id = f"SIP/fake-{n:08x}"
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            await asyncio.sleep(self.step_delay)

            if step == ACK_FAILURE:
                await self.emit(SwitchEvent(
                    type=SwitchEventType.ACKNOWLEDGED,
                    correlation_handle=request.correlation_handle,
                    success=False,
                    outcome=CallOutcome.BUSY,
                    cause="5",
                    received_at=self.clock(),
                ))
                return

            outcome = CallOutcome.ANSWERED if step == EARLY else step
            if step == EARLY:
                await self.emit(self._outcome_event(connection_id, channel_id, outcome))

            await self.emit(SwitchEvent(
                type=SwitchEventType.ACKNOWLEDGED,
                correlation_handle=request.correlation_handle,
                channel_id=channel_id,
                connection_id=connection_id,
                received_at=self.clock(),
            ))
            if step == SILENT:
                return

            if self.hold is not None:
                await self.hold.wait()
            if step != EARLY:
                await asyncio.sleep(self.step_delay)
                await self.emit(self._outcome_event(connection_id, channel_id, outcome))

            if outcome == CallOutcome.ANSWERED:
                release = asyncio.Event()
                self._release[channel_id] = release
                try:
                    await asyncio.wait_for(release.wait(), timeout=self.call_duration)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(self.step_delay)

            await self.emit(SwitchEvent(
                type=SwitchEventType.ENDED,
                connection_id=connection_id,
                channel_id=channel_id,
                cause="Normal Clearing",
                received_at=self.clock(),
            ))
        finally:
            self.active -= 1

    def _outcome_event(self, connection_id: str, channel_id: str, outcome: CallOutcome) -> SwitchEvent:
        return SwitchEvent(
            type=SwitchEventType.DIAL_OUTCOME,
            connection_id=connection_id,
            channel_id=channel_id,
            outcome=outcome,
            received_at=self.clock(),
        )

    async def emit(self, event: SwitchEvent) -> None:
        for handler in list(self._handlers):
            await handler(event)

    def release(self, channel_id: str) -> None:
        """End an answered call now"""
        release = self._release.get(channel_id)
        if release is not None:
            release.set()

    async def redirect(self, channel_id: str, context: str, extension: str = "s", priority: int = 1) -> None:
        if self.fail_redirect:
            raise SwitchError("redirect rejected")
        self.redirects.append((channel_id, context, extension, priority))

    async def hangup(self, channel_id: str) -> None:
        self.hangups.append(channel_id)
        self.release(channel_id)

    async def wait_idle(self) -> None:
        if self._calls:
            await asyncio.gather(*list(self._calls), return_exceptions=True)


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def ledger():
    return InMemoryBillingLedger()


@pytest.fixture
def bus():
    return InMemoryNotificationBus()


@pytest.fixture
def switch():
    return FakeSwitchPort()


@pytest.fixture
def engine(store, ledger, switch, bus):
    return build_engine(store, ledger, switch, bus, grace_seconds=0.5)


@pytest.fixture
def make_campaign():
    def _make(**overrides) -> Campaign:
        fields = {
            "id": f"camp-{uuid.uuid4().hex[:8]}",
            "name": "Spring Renewals",
            "status": CampaignStatus.ACTIVE,
            "max_concurrent_calls": 2,
            "max_wait_time": 1,
            "retry_interval": 0.05,
            "sip_trunk": "trunk-a",
            "operator_extension": "1000",
            "default_handling": DefaultHandling.AI,
            "ai_flow_id": "flow-7",
        }
        fields.update(overrides)
        return Campaign(**fields)
    return _make


@pytest.fixture
def seed(store):
    """Save a campaign and create one pending task per number."""
    async def _seed(campaign: Campaign, numbers: List[str], max_attempts: int = 3) -> List[CampaignTask]:
        await store.save_campaign(campaign)
        base = datetime.now(timezone.utc)
        tasks = [
            CampaignTask(
                id=f"task-{i}-{uuid.uuid4().hex[:6]}",
                campaign_id=campaign.id,
                target_number=number,
                contact_name=f"Contact {i}",
                max_attempts=max_attempts,
                created_at=base + timedelta(microseconds=i),
            )
            for i, number in enumerate(numbers)
        ]
        return await store.create_tasks(tasks)
    return _seed


@pytest.fixture
def wait_until():
    """Poll a (possibly async) predicate until it holds."""
    async def _wait(predicate, timeout: float = 3.0, interval: float = 0.002):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)
    return _wait
