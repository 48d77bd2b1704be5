"""
Unit tests for the dialer worker process
"""
import asyncio

import pytest

from campaign_dialer.core.config import Settings
from campaign_dialer.domain.models.campaign import CampaignStatus
from campaign_dialer.workers.dialer_worker import DialerWorker


class TestDialerWorker:
    @pytest.mark.asyncio
    async def test_resumes_active_campaigns_only(self, engine, store, make_campaign, seed):
        active = make_campaign()
        paused = make_campaign(status=CampaignStatus.PAUSED)
        await seed(active, ["5551"])
        await seed(paused, ["5552"])

        worker = DialerWorker(engine=engine, settings=Settings())
        await worker.initialize()
        resumed = await worker.resume_active_campaigns()

        assert resumed == 1
        assert engine.scheduler.is_running(active.id)
        assert not engine.scheduler.is_running(paused.id)
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self, engine, switch):
        worker = DialerWorker(engine=engine, settings=Settings())

        running = asyncio.create_task(worker.run())
        await asyncio.sleep(0.01)
        assert worker.running
        assert switch.connected

        worker.request_stop()
        await asyncio.wait_for(running, timeout=2)

        assert not worker.running
        assert worker.engine is None
        assert not switch.connected
        assert worker.get_stats() == {"running": False}
