"""
Task Store Interface
Durable state for campaigns and their tasks
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from campaign_dialer.domain.models.campaign import Campaign, CampaignStatus
from campaign_dialer.domain.models.campaign_task import CampaignTask, ClaimResult, TaskStatus


class CampaignStore(ABC):
    """Campaign persistence"""

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        pass

    @abstractmethod
    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        pass

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or replace a campaign"""
        pass

    @abstractmethod
    async def set_campaign_status(self, campaign_id: str, status: CampaignStatus) -> Optional[Campaign]:
        pass


class TaskStore(ABC):
    """
    Task persistence.

    claim_task is the only operation that needs to be atomic: it moves a
    task from pending to calling only if it is still pending.
    """

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[CampaignTask]:
        pass

    @abstractmethod
    async def list_tasks(
        self,
        campaign_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None
    ) -> List[CampaignTask]:
        """Tasks of a campaign in creation order"""
        pass

    @abstractmethod
    async def create_tasks(self, tasks: List[CampaignTask]) -> List[CampaignTask]:
        pass

    @abstractmethod
    async def claim_task(self, task: CampaignTask, correlation_handle: str, now: datetime) -> ClaimResult:
        """
        Atomically move a pending task to calling.

        Also bumps the attempt counter, stamps last_attempt_at and records
        the fresh correlation handle, clearing connection ids left over
        from an earlier attempt.
        """
        pass

    @abstractmethod
    async def update_task(self, task_id: str, **fields) -> Optional[CampaignTask]:
        pass

    @abstractmethod
    async def transition_task(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        **fields
    ) -> Optional[CampaignTask]:
        """
        Conditional single-task status change.

        Returns the updated task, or None if the task is missing or no
        longer in from_status. Raises ValueError for a transition the
        task lifecycle does not allow.
        """
        pass

    @abstractmethod
    async def transition_tasks(
        self,
        campaign_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        **fields
    ) -> int:
        """Bulk conditional status change; returns the number of tasks moved"""
        pass

    @abstractmethod
    async def promote_due_retries(self, campaign_id: str, now: datetime) -> int:
        """Move retry-pending tasks whose next attempt time has passed back to pending"""
        pass

    @abstractmethod
    async def delete_tasks(self, campaign_id: str, statuses: Iterable[TaskStatus]) -> int:
        pass

    @abstractmethod
    async def count_by_status(self, campaign_id: str) -> Dict[str, int]:
        pass
