"""
Unit tests for CampaignService
Operator operations: lifecycle, contacts, scheduling and reporting
"""
import asyncio
from datetime import datetime, timezone

import pytest

from campaign_dialer.core.engine import build_engine
from campaign_dialer.domain.exceptions import CampaignNotFoundError
from campaign_dialer.domain.models.campaign import CampaignStatus
from campaign_dialer.domain.models.campaign_task import TaskStatus
from campaign_dialer.domain.models.notification import NotificationKind

from conftest import FakeClock


class TestContacts:
    @pytest.mark.asyncio
    async def test_add_contacts_trims_and_skips_blanks(self, engine, store, make_campaign):
        campaign = make_campaign()
        await store.save_campaign(campaign)

        created = await engine.service.add_contacts(campaign.id, [
            {"number": " +15550001 ", "name": "  Ada "},
            {"phone": "+15550002"},
            {"number": "   ", "name": "Nobody"},
            {"name": "No number"},
        ], max_attempts=5)

        assert [t.target_number for t in created] == ["+15550001", "+15550002"]
        assert [t.contact_name for t in created] == ["Ada", ""]
        assert all(t.status == TaskStatus.PENDING and t.max_attempts == 5 for t in created)
        assert len(await store.list_tasks(campaign.id)) == 2

    @pytest.mark.asyncio
    async def test_add_contacts_unknown_campaign(self, engine):
        with pytest.raises(CampaignNotFoundError):
            await engine.service.add_contacts("missing", [{"number": "5551"}])

    @pytest.mark.asyncio
    async def test_clear_keeps_in_flight_and_handled(self, engine, store, make_campaign, seed):
        campaign = make_campaign()
        statuses = [
            TaskStatus.PENDING,
            TaskStatus.RETRY_PENDING,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
            TaskStatus.CALLING,
            TaskStatus.TRANSFERRED,
        ]
        tasks = await seed(campaign, [f"555{i}" for i in range(len(statuses))])
        for task, status in zip(tasks, statuses):
            await store.update_task(task.id, status=status)

        cleared = await engine.service.clear_pending_contacts(campaign.id)

        assert cleared == 4
        remaining = {t.status for t in await store.list_tasks(campaign.id)}
        assert remaining == {TaskStatus.CALLING, TaskStatus.TRANSFERRED}

    @pytest.mark.asyncio
    async def test_retry_failed_resets_budget(self, engine, store, make_campaign, seed):
        campaign = make_campaign(status=CampaignStatus.PAUSED)
        failed, handled = await seed(campaign, ["5551", "5552"])
        await store.update_task(failed.id, status=TaskStatus.FAILED, attempts=3, result="max_attempts: busy")
        await store.update_task(handled.id, status=TaskStatus.AI_HANDLED, attempts=1)

        count = await engine.service.retry_failed(campaign.id)

        assert count == 1
        again = await store.get_task(failed.id)
        assert again.status == TaskStatus.PENDING
        assert again.attempts == 0
        assert again.next_attempt_at is None
        assert (await store.get_task(handled.id)).status == TaskStatus.AI_HANDLED
        # Paused campaigns are not restarted
        assert not engine.scheduler.is_running(campaign.id)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_cancels_queued_work(self, engine, store, bus, make_campaign, seed):
        campaign = make_campaign(status=CampaignStatus.PAUSED)
        tasks = await seed(campaign, ["5551", "5552", "5553"])
        await store.update_task(tasks[1].id, status=TaskStatus.RETRY_PENDING)
        await store.update_task(tasks[2].id, status=TaskStatus.CALLING)

        result = await engine.service.stop_campaign(campaign.id)

        assert result["cancelled"] == 2
        assert result["campaign"].status == CampaignStatus.INACTIVE
        assert await store.count_by_status(campaign.id) == {"cancelled": 2, "calling": 1}
        [changed] = bus.of_kind(NotificationKind.STATUS_CHANGED)
        assert changed.payload == {"status": "inactive", "previous": "paused"}

    @pytest.mark.asyncio
    async def test_pause_keeps_tasks(self, engine, store, make_campaign, seed):
        campaign = make_campaign(status=CampaignStatus.INACTIVE)
        await seed(campaign, ["5551"])

        paused = await engine.service.pause_campaign(campaign.id)

        assert paused.status == CampaignStatus.PAUSED
        assert await store.count_by_status(campaign.id) == {"pending": 1}

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(self, engine, store, switch, bus, make_campaign, seed):
        switch.hold = asyncio.Event()
        campaign = make_campaign(status=CampaignStatus.INACTIVE)
        await seed(campaign, ["5551"])

        await engine.service.start_campaign(campaign.id)
        await asyncio.sleep(0.01)
        await engine.service.start_campaign(campaign.id)

        assert len(bus.of_kind(NotificationKind.STATUS_CHANGED)) == 1
        assert engine.scheduler.is_running(campaign.id)

        switch.hold.set()
        await asyncio.wait_for(engine.scheduler.wait(campaign.id), timeout=5)

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, engine):
        with pytest.raises(CampaignNotFoundError):
            await engine.service.start_campaign("missing")
        with pytest.raises(CampaignNotFoundError):
            await engine.service.stop_campaign("missing")


class TestScheduledStart:
    @pytest.mark.asyncio
    async def test_naive_time_read_in_campaign_timezone(self, store, ledger, switch, bus, make_campaign, seed):
        clock = FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
        delays = []

        async def sleep(delay):
            delays.append(delay)

        engine = build_engine(store, ledger, switch, bus, clock=clock, sleep=sleep)
        campaign = make_campaign(status=CampaignStatus.INACTIVE, timezone="America/New_York")
        await seed(campaign, ["5551"])

        scheduled = await engine.service.schedule_campaign(campaign.id, datetime(2024, 3, 1, 9, 30))

        assert scheduled.status == CampaignStatus.SCHEDULED
        assert scheduled.scheduled_start_time == datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)

        async def started():
            return (await store.get_campaign(campaign.id)).status != CampaignStatus.SCHEDULED
        for _ in range(100):
            if await started():
                break
            await asyncio.sleep(0.001)

        assert delays == [pytest.approx(9000)]
        assert (await store.get_campaign(campaign.id)).status in (CampaignStatus.ACTIVE, CampaignStatus.COMPLETED)
        await engine.service.shutdown()
        await switch.wait_idle()

    @pytest.mark.asyncio
    async def test_pause_cancels_scheduled_start(self, store, ledger, switch, bus, make_campaign):
        forever = asyncio.Event()

        async def sleep(delay):
            await forever.wait()

        engine = build_engine(store, ledger, switch, bus, sleep=sleep)
        campaign = make_campaign(status=CampaignStatus.INACTIVE)
        await store.save_campaign(campaign)

        await engine.service.schedule_campaign(campaign.id, datetime(2099, 1, 1, tzinfo=timezone.utc))
        await engine.service.pause_campaign(campaign.id)
        forever.set()
        await asyncio.sleep(0.01)

        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.PAUSED
        assert not engine.scheduler.is_running(campaign.id)

    @pytest.mark.asyncio
    async def test_rearm_after_restart(self, store, ledger, switch, bus, make_campaign):
        started = asyncio.Event()

        async def sleep(delay):
            started.set()

        engine = build_engine(store, ledger, switch, bus, sleep=sleep)
        await store.save_campaign(make_campaign(
            status=CampaignStatus.SCHEDULED,
            scheduled_start_time=datetime(2099, 1, 1, tzinfo=timezone.utc),
        ))
        await store.save_campaign(make_campaign(status=CampaignStatus.SCHEDULED))

        assert await engine.service.rearm_scheduled() == 1
        await asyncio.wait_for(started.wait(), timeout=1)
        await engine.service.shutdown()


class TestReporting:
    @pytest.mark.asyncio
    async def test_statistics_are_zero_filled(self, engine, store, make_campaign, seed):
        campaign = make_campaign(max_concurrent_calls=4)
        tasks = await seed(campaign, ["5551", "5552", "5553"])
        await store.update_task(tasks[0].id, status=TaskStatus.FAILED)

        stats = await engine.service.get_statistics(campaign.id)

        assert stats["total"] == 3
        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["by_status"]["transferred"] == 0
        assert set(stats["by_status"]) == {s.value for s in TaskStatus}
        assert stats["active_calls"] == 0
        assert stats["max_concurrent_calls"] == 4
        assert stats["campaign_status"] == "active"

    @pytest.mark.asyncio
    async def test_report_lists_tasks_with_billing(self, engine, store, make_campaign, seed):
        campaign = make_campaign()
        [task] = await seed(campaign, ["5551"])
        stored = await store.update_task(task.id, status=TaskStatus.FAILED, attempts=3, result="max_attempts: busy")
        await engine.billing.open_outbound_leg(stored, campaign, "1000")

        report = await engine.service.export_report(campaign.id)

        assert report["total"] == 1
        [row] = report["tasks"]
        assert row["target_number"] == "5551"
        assert row["status"] == "failed"
        assert row["attempts"] == 3
        assert row["result"] == "max_attempts: busy"
        assert row["billing"][0]["leg"] == "outbound"
