"""
Campaign Service
Operator operations on campaigns: lifecycle, contacts, call handling, reporting
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import pytz

from campaign_dialer.domain.exceptions import CampaignNotFoundError, DialerError
from campaign_dialer.domain.interfaces.notification_bus import NotificationBus
from campaign_dialer.domain.interfaces.task_store import CampaignStore, TaskStore
from campaign_dialer.domain.models.campaign import Campaign, CampaignStatus
from campaign_dialer.domain.models.campaign_task import (
    CANCELLABLE_STATUSES,
    CampaignTask,
    HandledBy,
    TaskStatus,
)
from campaign_dialer.domain.models.notification import Notification, NotificationKind
from campaign_dialer.domain.services.billing_emitter import BillingEmitter
from campaign_dialer.domain.services.campaign_dialer import CampaignDialer
from campaign_dialer.domain.services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)


# Tasks removed by "clear queue"; anything in flight or handled is kept
CLEARABLE_STATUSES = [
    TaskStatus.PENDING,
    TaskStatus.RETRY_PENDING,
    TaskStatus.NO_ANSWER,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
]


class CampaignService:
    """
    Entry point for everything an operator can do to a campaign.

    Starting a campaign hands it to the retry scheduler, which keeps
    running waves until nothing is left to dial. Stopping cancels queued
    work but lets calls already in progress finish.
    """

    def __init__(
        self,
        campaign_store: CampaignStore,
        task_store: TaskStore,
        dialer: CampaignDialer,
        scheduler: RetryScheduler,
        billing: BillingEmitter,
        notifications: NotificationBus,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._campaigns = campaign_store
        self._tasks = task_store
        self._dialer = dialer
        self._scheduler = scheduler
        self._billing = billing
        self._notifications = notifications
        self._clock = clock
        self._sleep = sleep
        self._scheduled_starts: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self._require_campaign(campaign_id)
        if campaign.is_active and self._scheduler.is_running(campaign_id):
            logger.info(f"Campaign {campaign.name} is already running")
            return campaign

        self._cancel_scheduled_start(campaign_id)
        campaign = await self._set_status(campaign, CampaignStatus.ACTIVE)
        self._scheduler.start(campaign_id)
        logger.info(f"Campaign started: {campaign.name}")
        return campaign

    async def schedule_campaign(self, campaign_id: str, start_time: datetime) -> Campaign:
        """
        Start the campaign automatically at `start_time`.

        Naive times are read in the campaign's own timezone. The timer only
        fires a start if the campaign is still scheduled by then.
        """
        campaign = await self._require_campaign(campaign_id)
        if start_time.tzinfo is None:
            try:
                tz = pytz.timezone(campaign.timezone)
            except pytz.exceptions.UnknownTimeZoneError:
                tz = pytz.UTC
            start_time = tz.localize(start_time)
        start_time = start_time.astimezone(timezone.utc)

        campaign = campaign.model_copy(update={"scheduled_start_time": start_time})
        await self._campaigns.save_campaign(campaign)
        campaign = await self._set_status(campaign, CampaignStatus.SCHEDULED)
        self._arm_scheduled_start(campaign)
        return campaign

    async def rearm_scheduled(self) -> int:
        """Re-create start timers for scheduled campaigns after a restart."""
        armed = 0
        for campaign in await self._campaigns.list_campaigns(CampaignStatus.SCHEDULED):
            if campaign.scheduled_start_time is None:
                continue
            self._arm_scheduled_start(campaign)
            armed += 1
        if armed:
            logger.info(f"Re-armed {armed} scheduled campaigns")
        return armed

    def _arm_scheduled_start(self, campaign: Campaign) -> None:
        self._cancel_scheduled_start(campaign.id)
        delay = (campaign.scheduled_start_time - self._clock()).total_seconds()
        logger.info(f"Campaign {campaign.name} scheduled to start in {max(0, round(delay))}s")
        timer = asyncio.create_task(self._start_when_due(campaign.id, delay))
        self._scheduled_starts[campaign.id] = timer

    async def _start_when_due(self, campaign_id: str, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)
        self._scheduled_starts.pop(campaign_id, None)
        try:
            campaign = await self._campaigns.get_campaign(campaign_id)
            if campaign is None or campaign.status != CampaignStatus.SCHEDULED:
                logger.info(f"Scheduled start skipped for campaign {campaign_id}")
                return
            logger.info(f"Auto-starting scheduled campaign: {campaign.name}")
            await self.start_campaign(campaign_id)
        except DialerError as e:
            logger.error(f"Scheduled campaign start failed: {e}")

    def _cancel_scheduled_start(self, campaign_id: str) -> None:
        timer = self._scheduled_starts.pop(campaign_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def pause_campaign(self, campaign_id: str) -> Campaign:
        """Stop claiming new tasks; calls in progress and queued tasks are kept."""
        campaign = await self._require_campaign(campaign_id)
        self._cancel_scheduled_start(campaign_id)
        campaign = await self._set_status(campaign, CampaignStatus.PAUSED)
        logger.info(f"Campaign paused: {campaign.name}")
        return campaign

    async def stop_campaign(self, campaign_id: str) -> Dict[str, Any]:
        """
        Deactivate the campaign.

        Pending and retry-pending tasks are cancelled at once; tasks that are
        already calling run to their natural end.
        """
        campaign = await self._require_campaign(campaign_id)
        self._cancel_scheduled_start(campaign_id)
        campaign = await self._set_status(campaign, CampaignStatus.INACTIVE)
        cancelled = await self._tasks.transition_tasks(
            campaign_id, CANCELLABLE_STATUSES, TaskStatus.CANCELLED
        )
        logger.info(f"Campaign stopped: {campaign.name} ({cancelled} tasks cancelled)")
        return {"campaign": campaign, "cancelled": cancelled}

    async def _set_status(self, campaign: Campaign, status: CampaignStatus) -> Campaign:
        updated = await self._campaigns.set_campaign_status(campaign.id, status)
        if updated is None:
            raise CampaignNotFoundError(campaign.id)
        await self._notifications.publish(Notification(
            kind=NotificationKind.STATUS_CHANGED,
            campaign_id=campaign.id,
            payload={"status": status.value, "previous": campaign.status.value},
        ))
        return updated

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def add_contacts(
        self,
        campaign_id: str,
        contacts: Iterable[Dict[str, Any]],
        max_attempts: int = 3
    ) -> List[CampaignTask]:
        """
        Create a pending task per contact.

        Each contact is a mapping with a `number` (or `phone`) and an
        optional `name`. Blank numbers are skipped.
        """
        campaign = await self._require_campaign(campaign_id)
        tasks = []
        for contact in contacts:
            number = str(contact.get("number") or contact.get("phone") or "").strip()
            if not number:
                continue
            tasks.append(CampaignTask(
                id=str(uuid.uuid4()),
                campaign_id=campaign_id,
                target_number=number,
                contact_name=str(contact.get("name") or "").strip(),
                max_attempts=max_attempts,
                created_at=self._clock(),
            ))

        created = await self._tasks.create_tasks(tasks) if tasks else []
        logger.info(f"Added {len(created)} contacts to campaign: {campaign.name}")
        return created

    async def clear_pending_contacts(self, campaign_id: str) -> int:
        await self._require_campaign(campaign_id)
        count = await self._tasks.delete_tasks(campaign_id, CLEARABLE_STATUSES)
        logger.info(f"Cleared {count} tasks from campaign {campaign_id}")
        return count

    async def retry_failed(self, campaign_id: str) -> int:
        """Put every failed task back in the queue with a fresh attempt budget."""
        campaign = await self._require_campaign(campaign_id)
        count = await self._tasks.transition_tasks(
            campaign_id, [TaskStatus.FAILED], TaskStatus.PENDING,
            attempts=0, next_attempt_at=None,
        )
        logger.info(f"Retrying {count} failed tasks for campaign {campaign.name}")
        if count and campaign.is_active:
            self._scheduler.start(campaign_id)
        return count

    # ------------------------------------------------------------------
    # Call handling
    # ------------------------------------------------------------------

    async def resolve_answered(
        self,
        task_id: str,
        handling: HandledBy,
        extension: Optional[str] = None,
        flow_id: Optional[str] = None
    ) -> CampaignTask:
        return await self._dialer.handle_answered(task_id, handling, extension=extension, flow_id=flow_id)

    async def accept_queued_call(self, task_id: str, extension: str) -> CampaignTask:
        return await self._dialer.accept_queued_call(task_id, extension)

    async def force_hangup(self, task_id: str) -> CampaignTask:
        return await self._dialer.force_hangup(task_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_statistics(self, campaign_id: str) -> Dict[str, Any]:
        """Live per-status task counts."""
        campaign = await self._require_campaign(campaign_id)
        counts = await self._tasks.count_by_status(campaign_id)
        by_status = {status.value: counts.get(status.value, 0) for status in TaskStatus}
        limiter = self._dialer.get_limiter(campaign_id)
        return {
            "campaign_id": campaign_id,
            "campaign_name": campaign.name,
            "campaign_status": campaign.status.value,
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active_calls": limiter.active if limiter else 0,
            "max_concurrent_calls": campaign.max_concurrent_calls,
        }

    async def export_report(self, campaign_id: str) -> Dict[str, Any]:
        campaign = await self._require_campaign(campaign_id)
        tasks = await self._tasks.list_tasks(campaign_id)

        rows = []
        for task in tasks:
            legs = await self._billing.list_legs(task.id)
            rows.append({
                "task_id": task.id,
                "target_number": task.target_number,
                "contact_name": task.contact_name,
                "status": task.status.value,
                "attempts": task.attempts,
                "max_attempts": task.max_attempts,
                "result": task.result,
                "handled_by": task.handled_by.value if task.handled_by else None,
                "transferred_to": task.transferred_to,
                "billing": [leg.to_record() for leg in legs],
            })

        return {
            "campaign_id": campaign_id,
            "campaign_name": campaign.name,
            "generated_at": self._clock().isoformat(),
            "total": len(rows),
            "tasks": rows,
        }

    async def _require_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self._campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def shutdown(self) -> None:
        for campaign_id in list(self._scheduled_starts):
            self._cancel_scheduled_start(campaign_id)
        await self._scheduler.shutdown()
