"""
In-Memory Stores
Process-local task store and billing ledger for local runs and tests
"""
import asyncio
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from campaign_dialer.domain.interfaces.billing_ledger import BillingLedger
from campaign_dialer.domain.interfaces.task_store import CampaignStore, TaskStore
from campaign_dialer.domain.models.billing_leg import BillingLeg
from campaign_dialer.domain.models.campaign import Campaign, CampaignStatus
from campaign_dialer.domain.models.campaign_task import CampaignTask, ClaimResult, TaskStatus, can_transition


class InMemoryTaskStore(CampaignStore, TaskStore):
    """
    Campaigns and tasks kept in dictionaries.

    Every mutation happens under one asyncio.Lock, which makes the claim
    a true compare-and-set. Callers always receive copies.
    """

    def __init__(self):
        self._campaigns: Dict[str, Campaign] = {}
        self._tasks: Dict[str, CampaignTask] = {}
        self._lock = asyncio.Lock()

        # Successful claims per task id, used to check retry bounds
        self.claims: Counter = Counter()

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        return [
            c.model_copy(deep=True) for c in self._campaigns.values()
            if status is None or c.status == status
        ]

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        async with self._lock:
            stored = campaign.model_copy(deep=True, update={"updated_at": datetime.now(timezone.utc)})
            if stored.created_at is None:
                stored.created_at = stored.updated_at
            self._campaigns[campaign.id] = stored
            return stored.model_copy(deep=True)

    async def set_campaign_status(self, campaign_id: str, status: CampaignStatus) -> Optional[Campaign]:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None
            campaign.status = status
            campaign.updated_at = datetime.now(timezone.utc)
            return campaign.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Optional[CampaignTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(
        self,
        campaign_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None
    ) -> List[CampaignTask]:
        wanted = set(statuses) if statuses is not None else None
        tasks = [
            t for t in self._tasks.values()
            if t.campaign_id == campaign_id and (wanted is None or t.status in wanted)
        ]
        tasks.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in tasks]

    async def create_tasks(self, tasks: List[CampaignTask]) -> List[CampaignTask]:
        async with self._lock:
            for task in tasks:
                self._tasks[task.id] = task.model_copy(deep=True)
            return [t.model_copy(deep=True) for t in tasks]

    async def claim_task(self, task: CampaignTask, correlation_handle: str, now: datetime) -> ClaimResult:
        async with self._lock:
            stored = self._tasks.get(task.id)
            if stored is None:
                return ClaimResult.NOT_FOUND
            if stored.status != TaskStatus.PENDING:
                return ClaimResult.ALREADY_CLAIMED

            stored.status = TaskStatus.CALLING
            stored.attempts += 1
            stored.last_attempt_at = now
            stored.correlation_handle = correlation_handle
            stored.channel_id = None
            stored.connection_id = None
            stored.call_result_detail = None
            stored.updated_at = now
            self.claims[task.id] += 1
            return ClaimResult.CLAIMED

    async def update_task(self, task_id: str, **fields) -> Optional[CampaignTask]:
        async with self._lock:
            stored = self._tasks.get(task_id)
            if stored is None:
                return None
            self._apply(stored, fields)
            return stored.model_copy(deep=True)

    async def transition_task(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        **fields
    ) -> Optional[CampaignTask]:
        if not can_transition(from_status, to_status):
            raise ValueError(f"Illegal task transition: {from_status.value} -> {to_status.value}")
        async with self._lock:
            stored = self._tasks.get(task_id)
            if stored is None or stored.status != from_status:
                return None
            self._apply(stored, {**fields, "status": to_status})
            return stored.model_copy(deep=True)

    async def transition_tasks(
        self,
        campaign_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        **fields
    ) -> int:
        wanted = set(from_statuses)
        async with self._lock:
            moved = 0
            for stored in self._tasks.values():
                if stored.campaign_id == campaign_id and stored.status in wanted:
                    self._apply(stored, {**fields, "status": to_status})
                    moved += 1
            return moved

    async def promote_due_retries(self, campaign_id: str, now: datetime) -> int:
        async with self._lock:
            moved = 0
            for stored in self._tasks.values():
                if (
                    stored.campaign_id == campaign_id
                    and stored.status == TaskStatus.RETRY_PENDING
                    and (stored.next_attempt_at is None or stored.next_attempt_at <= now)
                ):
                    self._apply(stored, {"status": TaskStatus.PENDING})
                    moved += 1
            return moved

    async def delete_tasks(self, campaign_id: str, statuses: Iterable[TaskStatus]) -> int:
        wanted = set(statuses)
        async with self._lock:
            doomed = [
                task_id for task_id, t in self._tasks.items()
                if t.campaign_id == campaign_id and t.status in wanted
            ]
            for task_id in doomed:
                del self._tasks[task_id]
            return len(doomed)

    async def count_by_status(self, campaign_id: str) -> Dict[str, int]:
        counts = Counter(t.status.value for t in self._tasks.values() if t.campaign_id == campaign_id)
        return dict(counts)

    @staticmethod
    def _apply(task: CampaignTask, fields: dict) -> None:
        for key, value in fields.items():
            if key not in CampaignTask.model_fields:
                raise ValueError(f"Unknown task field: {key}")
            setattr(task, key, value)
        task.updated_at = datetime.now(timezone.utc)


class InMemoryBillingLedger(BillingLedger):
    """Billing legs kept in a dictionary"""

    def __init__(self):
        self._legs: Dict[str, BillingLeg] = {}
        self._lock = asyncio.Lock()

    async def create_leg(self, leg: BillingLeg) -> BillingLeg:
        async with self._lock:
            if leg.id in self._legs:
                raise ValueError(f"Billing leg already exists: {leg.id}")
            self._legs[leg.id] = leg.model_copy(deep=True)
            return leg.model_copy(deep=True)

    async def finalize_leg(
        self,
        leg_id: str,
        duration_seconds: int,
        total_cost: float,
        finalized_at: datetime
    ) -> bool:
        async with self._lock:
            leg = self._legs.get(leg_id)
            if leg is None or leg.is_finalized:
                return False
            leg.duration_seconds = duration_seconds
            leg.total_cost = total_cost
            leg.finalized_at = finalized_at
            return True

    async def list_legs(self, task_id: str) -> List[BillingLeg]:
        legs = [leg for leg in self._legs.values() if leg.task_id == task_id]
        legs.sort(key=lambda leg: leg.started_at)
        return [leg.model_copy(deep=True) for leg in legs]
