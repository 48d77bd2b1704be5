"""
Unit tests for EventCorrelator
Matching switch events to tasks by connection id
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from campaign_dialer.domain.models.billing_leg import Leg
from campaign_dialer.domain.models.campaign import Campaign
from campaign_dialer.domain.models.campaign_task import CallOutcome, CampaignTask
from campaign_dialer.domain.models.notification import NotificationKind
from campaign_dialer.domain.models.switch_event import SwitchEvent, SwitchEventType
from campaign_dialer.domain.services.billing_emitter import BillingEmitter
from campaign_dialer.domain.services.event_correlator import EventCorrelator
from campaign_dialer.infrastructure.notifications.redis_notification_bus import InMemoryNotificationBus
from campaign_dialer.infrastructure.storage.memory import InMemoryBillingLedger, InMemoryTaskStore


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def ack(handle, connection_id="conn-1", channel_id="SIP/trunk-0001", success=True, outcome=None):
    return SwitchEvent(
        type=SwitchEventType.ACKNOWLEDGED,
        correlation_handle=handle,
        connection_id=connection_id if success else None,
        channel_id=channel_id if success else None,
        success=success,
        outcome=outcome,
    )


def dial(outcome, connection_id="conn-1"):
    return SwitchEvent(type=SwitchEventType.DIAL_OUTCOME, connection_id=connection_id, outcome=outcome)


def ended(connection_id="conn-1", at=None):
    return SwitchEvent(
        type=SwitchEventType.ENDED,
        connection_id=connection_id,
        cause="Normal Clearing",
        received_at=at or T0,
    )


class Harness:
    def __init__(self, **kwargs):
        self.store = InMemoryTaskStore()
        self.ledger = InMemoryBillingLedger()
        self.bus = InMemoryNotificationBus()
        self.billing = BillingEmitter(self.ledger, clock=lambda: T0)
        self.correlator = EventCorrelator(self.store, self.billing, self.bus, **kwargs)
        self.campaign = Campaign(id="c-1", name="Renewals", cost_per_minute=0.6)

    async def calling_task(self, task_id="t-1", handle="h-1"):
        [task] = await self.store.create_tasks([
            CampaignTask(id=task_id, campaign_id="c-1", target_number="+15550001")
        ])
        await self.store.claim_task(task, handle, T0)
        entry = self.correlator.register(handle, task_id, "c-1")
        return task, entry


@pytest.fixture
def harness():
    return Harness()


class TestEntryLifecycle:
    def test_duplicate_handle_rejected(self, harness):
        harness.correlator.register("h-1", "t-1", "c-1")
        with pytest.raises(ValueError):
            harness.correlator.register("h-1", "t-2", "c-1")

    def test_unregister_exactly_once(self, harness):
        harness.correlator.register("h-1", "t-1", "c-1")

        assert harness.correlator.unregister("h-1") is True
        assert harness.correlator.unregister("h-1") is False
        assert harness.correlator.open_entries == 0


class TestMatching:
    @pytest.mark.asyncio
    async def test_ack_records_connection_on_task(self, harness):
        task, entry = await harness.calling_task()

        await harness.correlator.handle_event(ack("h-1"))

        stored = await harness.store.get_task(task.id)
        assert stored.connection_id == "conn-1"
        assert stored.channel_id == "SIP/trunk-0001"
        assert entry.connection_id == "conn-1"

    @pytest.mark.asyncio
    async def test_outcome_matched_by_connection_id(self, harness):
        task, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))

        await harness.correlator.handle_event(dial(CallOutcome.BUSY))

        assert entry.resolved
        assert entry.outcome == CallOutcome.BUSY
        assert (await harness.store.get_task(task.id)).call_result_detail == "busy"

    @pytest.mark.asyncio
    async def test_first_outcome_wins(self, harness):
        _, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))

        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED))
        await harness.correlator.handle_event(dial(CallOutcome.BUSY))

        assert entry.outcome == CallOutcome.ANSWERED

    @pytest.mark.asyncio
    async def test_unrelated_connection_is_ignored(self, harness):
        _, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))

        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED, connection_id="someone-else"))

        assert not entry.resolved

    @pytest.mark.asyncio
    async def test_task_that_moved_on_no_longer_matches(self, harness):
        task, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))
        await harness.store.update_task(task.id, connection_id="conn-2")

        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED))

        assert not entry.resolved

    @pytest.mark.asyncio
    async def test_ack_for_unknown_handle_dropped(self, harness):
        await harness.correlator.handle_event(ack("nobody"))
        assert harness.correlator.get_stats()["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_failed_origination_resolves_and_ends(self, harness):
        task, entry = await harness.calling_task()

        await harness.correlator.handle_event(ack("h-1", success=False, outcome=CallOutcome.CONGESTION))

        assert entry.outcome == CallOutcome.CONGESTION
        assert entry.ended
        assert (await harness.store.get_task(task.id)).call_result_detail == "congestion"

    @pytest.mark.asyncio
    async def test_answer_carried_on_acknowledgement(self, harness):
        task, entry = await harness.calling_task()

        await harness.correlator.handle_event(ack("h-1", outcome=CallOutcome.ANSWERED))

        assert entry.connection_id == "conn-1"
        assert entry.outcome == CallOutcome.ANSWERED
        assert not entry.ended
        assert (await harness.store.get_task(task.id)).call_result_detail == "answered"

    @pytest.mark.asyncio
    async def test_hangup_after_answered_acknowledgement_keeps_answer(self, harness):
        _, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1", outcome=CallOutcome.ANSWERED))

        await harness.correlator.handle_event(ended())

        assert entry.outcome == CallOutcome.ANSWERED
        assert entry.ended

    @pytest.mark.asyncio
    async def test_hangup_without_outcome_counts_as_no_answer(self, harness):
        task, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))

        await harness.correlator.handle_event(ended())

        assert entry.outcome == CallOutcome.NO_ANSWER
        assert entry.ended
        assert entry.ended_at == T0
        assert (await harness.store.get_task(task.id)).call_result_detail == "no_answer"


class TestEarlyEvents:
    @pytest.mark.asyncio
    async def test_outcome_before_ack_is_replayed(self, harness):
        _, entry = await harness.calling_task()

        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED))
        assert not entry.resolved
        assert harness.correlator.get_stats()["buffered_connections"] == 1

        await harness.correlator.handle_event(ack("h-1"))

        assert entry.outcome == CallOutcome.ANSWERED
        assert harness.correlator.get_stats()["buffered_connections"] == 0

    @pytest.mark.asyncio
    async def test_answered_acknowledgement_settles_before_early_hangup(self, harness):
        _, entry = await harness.calling_task()

        await harness.correlator.handle_event(ended())
        await harness.correlator.handle_event(ack("h-1", outcome=CallOutcome.ANSWERED))

        assert entry.outcome == CallOutcome.ANSWERED
        assert entry.ended

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self):
        harness = Harness(early_buffer_size=2)

        for n in range(3):
            await harness.correlator.handle_event(dial(CallOutcome.BUSY, connection_id=f"conn-{n}"))

        stats = harness.correlator.get_stats()
        assert stats["buffered_connections"] == 2
        assert stats["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_stale_events_expire(self):
        harness = Harness(early_buffer_age=0.01)
        _, entry = await harness.calling_task()

        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED))
        await asyncio.sleep(0.03)
        await harness.correlator.handle_event(ack("h-1"))

        assert not entry.resolved


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_unresolved_entry_forced_to_error(self, harness):
        _, entry = await harness.calling_task()

        outcome = await harness.correlator.wait_for_outcome(entry, 0.01)

        assert outcome == CallOutcome.ERROR
        assert entry.timed_out

    @pytest.mark.asyncio
    async def test_resolved_entry_returns_immediately(self, harness):
        _, entry = await harness.calling_task()
        entry.resolve(CallOutcome.BUSY)

        assert await harness.correlator.wait_for_outcome(entry, 5) == CallOutcome.BUSY
        assert not entry.timed_out

    @pytest.mark.asyncio
    async def test_wait_for_end_reports_timeout(self, harness):
        _, entry = await harness.calling_task()
        assert await harness.correlator.wait_for_end(entry, 0.01) is False


class TestEndedFinalizesBilling:
    @pytest.mark.asyncio
    async def test_open_legs_closed_and_call_ended_published(self, harness):
        task, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))
        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED))
        stored = await harness.store.get_task(task.id)
        await harness.billing.open_outbound_leg(stored, harness.campaign, "1000")

        await harness.correlator.handle_event(ended(at=T0 + timedelta(seconds=120)))

        [leg] = await harness.ledger.list_legs(task.id)
        assert leg.leg == Leg.OUTBOUND
        assert leg.duration_seconds == 120
        assert leg.total_cost == pytest.approx(1.2)
        [published] = harness.bus.of_kind(NotificationKind.CALL_ENDED)
        assert published.task_id == task.id
        assert published.payload["cause"] == "Normal Clearing"

    @pytest.mark.asyncio
    async def test_hangup_after_release_still_finalizes(self, harness):
        task, entry = await harness.calling_task()
        await harness.correlator.handle_event(ack("h-1"))
        await harness.correlator.handle_event(dial(CallOutcome.ANSWERED))
        stored = await harness.store.get_task(task.id)
        await harness.billing.open_outbound_leg(stored, harness.campaign, "1000")

        harness.correlator.unregister("h-1")
        assert harness.correlator.get_stats()["released_connections"] == 1

        await harness.correlator.handle_event(ended(at=T0 + timedelta(seconds=30)))

        [leg] = await harness.ledger.list_legs(task.id)
        assert leg.is_finalized
        assert leg.duration_seconds == 30
        assert harness.correlator.get_stats()["released_connections"] == 0
        assert len(harness.bus.of_kind(NotificationKind.CALL_ENDED)) == 1

    @pytest.mark.asyncio
    async def test_released_connections_are_bounded(self):
        harness = Harness(closed_capacity=1)
        for n in range(2):
            entry = harness.correlator.register(f"h-{n}", f"t-{n}", "c-1")
            entry.connection_id = f"conn-{n}"
            harness.correlator._by_connection[entry.connection_id] = entry.handle
            harness.correlator.unregister(entry.handle)

        assert harness.correlator.get_stats()["released_connections"] == 1
