"""
Retry Scheduler
Re-runs dialing waves for a campaign as retry-pending tasks become eligible
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from campaign_dialer.domain.exceptions import CampaignNotFoundError
from campaign_dialer.domain.interfaces.notification_bus import NotificationBus
from campaign_dialer.domain.interfaces.task_store import CampaignStore, TaskStore
from campaign_dialer.domain.models.campaign import CampaignStatus
from campaign_dialer.domain.models.campaign_task import TaskStatus
from campaign_dialer.domain.models.notification import Notification, NotificationKind
from campaign_dialer.domain.services.campaign_dialer import CampaignDialer

logger = logging.getLogger(__name__)


class RetryScheduler:
    """
    One runner per active campaign.

    Each runner loop:
    1. Promotes retry-pending tasks whose next attempt time has passed
    2. Runs a wave over everything pending
    3. Sleeps until the earliest next attempt time, if any task is waiting
       for a retry, and repeats
    4. Marks the campaign completed once nothing is left to dial

    The retry delay is the campaign's fixed retry interval; there is no
    escalating backoff. A runner exits as soon as it finds its campaign
    paused or stopped.
    """

    # Pause before re-running a wave that could not claim anything
    IDLE_INTERVAL = 1.0

    def __init__(
        self,
        dialer: CampaignDialer,
        task_store: TaskStore,
        campaign_store: CampaignStore,
        notifications: NotificationBus,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._dialer = dialer
        self._task_store = task_store
        self._campaign_store = campaign_store
        self._notifications = notifications
        self._clock = clock
        self._sleep = sleep
        self._runners: Dict[str, asyncio.Task] = {}

        # Stats
        self._waves_run = 0
        self._campaigns_completed = 0

    def start(self, campaign_id: str) -> asyncio.Task:
        """Start (or keep) the runner for a campaign."""
        runner = self._runners.get(campaign_id)
        if runner is not None and not runner.done():
            logger.debug(f"Runner for campaign {campaign_id} already running")
            return runner

        runner = asyncio.create_task(self._run(campaign_id), name=f"campaign-runner-{campaign_id}")
        runner.add_done_callback(lambda t, cid=campaign_id: self._on_runner_done(cid, t))
        self._runners[campaign_id] = runner
        logger.info(f"Runner started for campaign {campaign_id}")
        return runner

    def is_running(self, campaign_id: str) -> bool:
        runner = self._runners.get(campaign_id)
        return runner is not None and not runner.done()

    async def wait(self, campaign_id: str) -> None:
        """Wait for a campaign's runner to exit."""
        runner = self._runners.get(campaign_id)
        if runner is not None:
            await asyncio.gather(runner, return_exceptions=True)

    async def _run(self, campaign_id: str) -> None:
        while True:
            campaign = await self._campaign_store.get_campaign(campaign_id)
            if campaign is None or not campaign.is_active:
                logger.info(f"Campaign {campaign_id} not active, runner exiting")
                return

            promoted = await self._task_store.promote_due_retries(campaign_id, self._clock())
            if promoted:
                logger.info(f"Promoted {promoted} retry-pending tasks for campaign {campaign.name}")

            try:
                result = await self._dialer.run_wave(campaign_id)
            except CampaignNotFoundError:
                logger.warning(f"Campaign {campaign_id} disappeared, runner exiting")
                return
            self._waves_run += 1

            campaign = await self._campaign_store.get_campaign(campaign_id)
            if campaign is None or not campaign.is_active:
                logger.info(f"Campaign {campaign_id} no longer active after wave")
                return

            delay = await self.next_wave_delay(campaign_id)
            if delay is None:
                await self._complete(campaign_id, campaign.name)
                return

            if delay == 0 and result.claimed == 0:
                delay = self.IDLE_INTERVAL
            if delay > 0:
                logger.info(f"Next wave for campaign {campaign.name} in {delay:.1f}s")
                await self._sleep(delay)

    async def next_wave_delay(self, campaign_id: str) -> Optional[float]:
        """
        Seconds until the next wave is worth running.

        0 if tasks are already pending, the time until the earliest retry
        if only retry-pending tasks remain, None if nothing is left.
        """
        pending = await self._task_store.list_tasks(
            campaign_id, [TaskStatus.PENDING, TaskStatus.CALLING, TaskStatus.RETRY_PENDING]
        )
        if not pending:
            return None
        if any(t.status != TaskStatus.RETRY_PENDING for t in pending):
            return 0

        now = self._clock()
        due_times = [t.next_attempt_at for t in pending if t.next_attempt_at is not None]
        if not due_times:
            return 0
        return max(0.0, (min(due_times) - now).total_seconds())

    async def _complete(self, campaign_id: str, name: str) -> None:
        updated = await self._campaign_store.set_campaign_status(campaign_id, CampaignStatus.COMPLETED)
        if updated is None:
            return
        self._campaigns_completed += 1
        logger.info(f"Campaign {name} completed")
        await self._notifications.publish(Notification(
            kind=NotificationKind.STATUS_CHANGED,
            campaign_id=campaign_id,
            payload={"status": CampaignStatus.COMPLETED.value},
        ))

    def _on_runner_done(self, campaign_id: str, runner: asyncio.Task) -> None:
        if self._runners.get(campaign_id) is runner:
            del self._runners[campaign_id]
        if runner.cancelled():
            return
        error = runner.exception()
        if error is not None:
            logger.error(f"Runner for campaign {campaign_id} crashed: {error}", exc_info=error)

    async def shutdown(self) -> None:
        """Cancel every runner; in-flight calls are abandoned to their timeouts."""
        runners = list(self._runners.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        logger.info(f"Retry scheduler stopped ({len(runners)} runners cancelled)")

    def get_stats(self) -> dict:
        return {
            "running_campaigns": [cid for cid, r in self._runners.items() if not r.done()],
            "waves_run": self._waves_run,
            "campaigns_completed": self._campaigns_completed,
        }
