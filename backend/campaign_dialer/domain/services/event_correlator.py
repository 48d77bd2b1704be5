"""
Event Correlator
Matches asynchronous switch events to the campaign task that caused them
"""
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from campaign_dialer.domain.interfaces.notification_bus import NotificationBus
from campaign_dialer.domain.interfaces.task_store import TaskStore
from campaign_dialer.domain.models.campaign_task import CallOutcome
from campaign_dialer.domain.models.notification import Notification, NotificationKind
from campaign_dialer.domain.models.switch_event import SwitchEvent, SwitchEventType
from campaign_dialer.domain.services.billing_emitter import BillingEmitter

logger = logging.getLogger(__name__)


@dataclass
class CorrelationEntry:
    """One in-flight attempt waiting for its switch events."""
    handle: str
    task_id: str
    campaign_id: str
    connection_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: Optional[CallOutcome] = None
    timed_out: bool = False
    ended_at: Optional[datetime] = None
    _outcome_set: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _ended: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def resolved(self) -> bool:
        return self._outcome_set.is_set()

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    def resolve(self, outcome: CallOutcome) -> bool:
        """Record the terminal dial outcome; the first one wins."""
        if self._outcome_set.is_set():
            return False
        self.outcome = outcome
        self._outcome_set.set()
        return True

    def mark_ended(self, at: Optional[datetime] = None) -> None:
        if not self._ended.is_set():
            self.ended_at = at or datetime.now(timezone.utc)
            self._ended.set()


class EventCorrelator:
    """
    Single shared subscriber for switch events.

    Entries are keyed by the correlation handle chosen at origination and,
    once acknowledged, indexed by the switch connection id. Outcome and
    ended events are matched by connection id against the task's recorded
    id, re-read from the task store for every event. Events for unknown
    connections are held in a small buffer in case their acknowledgement
    is still on its way; anything left there expires.
    """

    def __init__(
        self,
        task_store: TaskStore,
        billing: BillingEmitter,
        notifications: NotificationBus,
        early_buffer_size: int = 256,
        early_buffer_age: float = 30.0,
        closed_capacity: int = 1024,
    ):
        self._task_store = task_store
        self._billing = billing
        self._notifications = notifications
        self._early_buffer_size = early_buffer_size
        self._early_buffer_age = early_buffer_age

        self._entries: Dict[str, CorrelationEntry] = {}
        self._by_connection: Dict[str, str] = {}  # connection_id -> handle
        self._early: "OrderedDict[str, List[Tuple[float, SwitchEvent]]]" = OrderedDict()
        # Connections whose attempt finished before the switch tore them down
        self._closed: "OrderedDict[str, CorrelationEntry]" = OrderedDict()
        self._closed_capacity = closed_capacity
        self._lock = asyncio.Lock()

        # Stats
        self._events_matched = 0
        self._events_dropped = 0

    # ------------------------------------------------------------------
    # Entry lifecycle
    # ------------------------------------------------------------------

    def register(self, handle: str, task_id: str, campaign_id: str) -> CorrelationEntry:
        """Create the entry for an attempt. Must happen before originate."""
        if handle in self._entries:
            raise ValueError(f"Correlation handle already registered: {handle}")
        entry = CorrelationEntry(handle=handle, task_id=task_id, campaign_id=campaign_id)
        self._entries[handle] = entry
        logger.debug(f"Correlation registered: handle={handle} task={task_id}")
        return entry

    def unregister(self, handle: str) -> bool:
        """Remove an entry. Returns False if it was already gone."""
        entry = self._entries.pop(handle, None)
        if entry is None:
            logger.warning(f"Correlation handle {handle} unregistered twice")
            return False
        if entry.connection_id and self._by_connection.get(entry.connection_id) == handle:
            del self._by_connection[entry.connection_id]
            if not entry.ended:
                self._closed[entry.connection_id] = entry
                while len(self._closed) > self._closed_capacity:
                    self._closed.popitem(last=False)
        logger.debug(f"Correlation removed: handle={handle} task={entry.task_id}")
        return True

    def get(self, handle: str) -> Optional[CorrelationEntry]:
        return self._entries.get(handle)

    @property
    def open_entries(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_for_outcome(self, entry: CorrelationEntry, timeout: float) -> CallOutcome:
        """
        Wait for the attempt's dial outcome.

        An entry still unresolved when the bound expires is force-resolved
        with an error outcome.
        """
        try:
            await asyncio.wait_for(entry._outcome_set.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            if entry.resolve(CallOutcome.ERROR):
                entry.timed_out = True
                logger.warning(
                    f"Correlation timeout: task={entry.task_id} handle={entry.handle} "
                    f"after {timeout:.1f}s"
                )
        return entry.outcome

    async def wait_for_end(self, entry: CorrelationEntry, timeout: float) -> bool:
        """Wait for the connection to end. Returns False on timeout."""
        try:
            await asyncio.wait_for(entry._ended.wait(), timeout=max(0.0, timeout))
            return True
        except asyncio.TimeoutError:
            entry.timed_out = True
            logger.warning(f"Connection for task {entry.task_id} did not end within bound")
            return False

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: SwitchEvent) -> None:
        """Subscription handler for every switch event."""
        async with self._lock:
            try:
                if event.type == SwitchEventType.ACKNOWLEDGED:
                    await self._on_acknowledged(event)
                else:
                    await self._on_connection_event(event)
            except Exception as e:
                logger.error(f"Failed to correlate {event.type.value} event: {e}", exc_info=True)

    async def _on_acknowledged(self, event: SwitchEvent) -> None:
        entry = self._entries.get(event.correlation_handle) if event.correlation_handle else None
        if entry is None:
            self._events_dropped += 1
            logger.debug(f"Dropping acknowledgement for unknown handle {event.correlation_handle}")
            return

        if not event.success:
            # Switch gave up on the origination; no connection will follow
            outcome = event.outcome or CallOutcome.ERROR
            entry.resolve(outcome)
            entry.mark_ended(event.received_at)
            self._events_matched += 1
            logger.info(f"Origination failed for task {entry.task_id}: {outcome.value} ({event.cause})")
            await self._task_store.update_task(entry.task_id, call_result_detail=outcome.value)
            return

        if not event.connection_id:
            logger.warning(f"Acknowledgement for task {entry.task_id} carries no connection id")
            return

        owner = self._by_connection.get(event.connection_id)
        if owner is not None and owner != entry.handle:
            logger.warning(
                f"Connection {event.connection_id} already bound to handle {owner}; "
                f"ignoring acknowledgement for {entry.handle}"
            )
            return

        await self._task_store.update_task(
            entry.task_id,
            channel_id=event.channel_id,
            connection_id=event.connection_id,
        )
        entry.connection_id = event.connection_id
        self._by_connection[event.connection_id] = entry.handle
        self._events_matched += 1
        logger.debug(
            f"Campaign call originated: task={entry.task_id} "
            f"channel={event.channel_id} connection={event.connection_id}"
        )

        if event.outcome is not None:
            # The switch settled the dial together with the acknowledgement
            await self._on_dial_outcome(entry, event)

        for early in self._take_early(event.connection_id):
            logger.debug(f"Replaying early {early.type.value} event for {event.connection_id}")
            await self._on_connection_event(early)

    async def _on_connection_event(self, event: SwitchEvent) -> None:
        entry = await self._match(event.connection_id)
        if entry is None:
            closed = self._closed.get(event.connection_id) if event.connection_id else None
            if closed is not None:
                await self._on_late_event(closed, event)
            else:
                self._buffer_early(event)
            return

        self._events_matched += 1
        if event.type == SwitchEventType.DIAL_OUTCOME:
            await self._on_dial_outcome(entry, event)
        elif event.type == SwitchEventType.ENDED:
            await self._on_ended(entry, event)

    async def _on_dial_outcome(self, entry: CorrelationEntry, event: SwitchEvent) -> None:
        outcome = event.outcome or CallOutcome.ERROR
        logger.info(f"Dial outcome for task {entry.task_id}: {outcome.value}")
        if entry.resolve(outcome):
            await self._task_store.update_task(entry.task_id, call_result_detail=outcome.value)

    async def _on_ended(self, entry: CorrelationEntry, event: SwitchEvent) -> None:
        logger.info(f"Campaign call ended: task={entry.task_id}")
        # Hangup without a dial outcome counts as unanswered
        resolved_here = entry.resolve(event.outcome or CallOutcome.NO_ANSWER)
        entry.mark_ended(event.received_at)

        await self._billing.finalize_open_legs(entry.task_id, ended_at=event.received_at)
        await self._notifications.publish(Notification(
            kind=NotificationKind.CALL_ENDED,
            campaign_id=entry.campaign_id,
            task_id=entry.task_id,
            payload={"connection_id": event.connection_id, "cause": event.cause},
        ))
        if resolved_here:
            await self._task_store.update_task(entry.task_id, call_result_detail=entry.outcome.value)

    async def _on_late_event(self, entry: CorrelationEntry, event: SwitchEvent) -> None:
        """Event for a connection that outlived its attempt (e.g. a transferred call)."""
        if event.type != SwitchEventType.ENDED:
            self._events_dropped += 1
            logger.debug(f"Ignoring late {event.type.value} event for task {entry.task_id}")
            return

        del self._closed[event.connection_id]
        self._events_matched += 1
        entry.mark_ended(event.received_at)
        logger.info(f"Campaign call ended after release: task={entry.task_id}")
        await self._billing.finalize_open_legs(entry.task_id, ended_at=event.received_at)
        await self._notifications.publish(Notification(
            kind=NotificationKind.CALL_ENDED,
            campaign_id=entry.campaign_id,
            task_id=entry.task_id,
            payload={"connection_id": event.connection_id, "cause": event.cause},
        ))

    async def _match(self, connection_id: Optional[str]) -> Optional[CorrelationEntry]:
        if not connection_id:
            return None
        handle = self._by_connection.get(connection_id)
        entry = self._entries.get(handle) if handle else None
        if entry is None:
            return None

        task = await self._task_store.get_task(entry.task_id)
        if task is None or task.connection_id != connection_id:
            logger.debug(f"Task {entry.task_id} no longer owns connection {connection_id}")
            return None
        return entry

    # ------------------------------------------------------------------
    # Early event buffer
    # ------------------------------------------------------------------

    def _buffer_early(self, event: SwitchEvent) -> None:
        if not event.connection_id:
            self._events_dropped += 1
            return

        now = asyncio.get_running_loop().time()
        self._expire_early(now)
        self._early.setdefault(event.connection_id, []).append((now, event))
        self._early.move_to_end(event.connection_id)
        while len(self._early) > self._early_buffer_size:
            _, dropped = self._early.popitem(last=False)
            self._events_dropped += len(dropped)
        logger.debug(f"Holding unmatched {event.type.value} event for connection {event.connection_id}")

    def _take_early(self, connection_id: str) -> List[SwitchEvent]:
        self._expire_early(asyncio.get_running_loop().time())
        return [event for _, event in self._early.pop(connection_id, [])]

    def _expire_early(self, now: float) -> None:
        expired = [
            conn for conn, events in self._early.items()
            if now - events[-1][0] > self._early_buffer_age
        ]
        for conn in expired:
            self._events_dropped += len(self._early.pop(conn))

    def get_stats(self) -> dict:
        return {
            "open_entries": len(self._entries),
            "bound_connections": len(self._by_connection),
            "buffered_connections": len(self._early),
            "released_connections": len(self._closed),
            "events_matched": self._events_matched,
            "events_dropped": self._events_dropped,
        }
