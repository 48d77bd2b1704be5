"""
Supabase Task Store
Campaign and task persistence on Supabase (PostgREST)
"""
import logging
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client

from campaign_dialer.domain.interfaces.task_store import CampaignStore, TaskStore
from campaign_dialer.domain.models.campaign import Campaign, CampaignStatus
from campaign_dialer.domain.models.campaign_task import CampaignTask, ClaimResult, TaskStatus, can_transition

logger = logging.getLogger(__name__)


def to_column(value: Any) -> Any:
    """Convert a Python value to its JSON column representation."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: to_column(value) for key, value in fields.items()}


class SupabaseTaskStore(CampaignStore, TaskStore):
    """
    Tables:
    - campaigns: one row per Campaign (dtmf settings as jsonb)
    - campaign_tasks: one row per CampaignTask

    The claim is a conditional update filtered on status = 'pending';
    PostgREST returns the updated rows, so an empty result means another
    wave got there first.
    """

    CAMPAIGNS_TABLE = "campaigns"
    TASKS_TABLE = "campaign_tasks"

    def __init__(self, client: Client):
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseTaskStore":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_service_key))

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        response = self._client.table(self.CAMPAIGNS_TABLE).select("*").eq("id", campaign_id).execute()
        if not response.data:
            return None
        return Campaign.model_validate(response.data[0])

    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        query = self._client.table(self.CAMPAIGNS_TABLE).select("*")
        if status is not None:
            query = query.eq("status", status.value)
        response = query.order("created_at").execute()
        return [Campaign.model_validate(row) for row in response.data or []]

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        record = campaign.model_dump(mode="json")
        record["updated_at"] = datetime.now(timezone.utc).isoformat()
        response = self._client.table(self.CAMPAIGNS_TABLE).upsert(record).execute()
        return Campaign.model_validate(response.data[0]) if response.data else campaign

    async def set_campaign_status(self, campaign_id: str, status: CampaignStatus) -> Optional[Campaign]:
        response = self._client.table(self.CAMPAIGNS_TABLE).update({
            "status": status.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }).eq("id", campaign_id).execute()
        if not response.data:
            return None
        return Campaign.model_validate(response.data[0])

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Optional[CampaignTask]:
        response = self._client.table(self.TASKS_TABLE).select("*").eq("id", task_id).execute()
        if not response.data:
            return None
        return CampaignTask.from_record(response.data[0])

    async def list_tasks(
        self,
        campaign_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None
    ) -> List[CampaignTask]:
        query = self._client.table(self.TASKS_TABLE).select("*").eq("campaign_id", campaign_id)
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        response = query.order("created_at").execute()
        return [CampaignTask.from_record(row) for row in response.data or []]

    async def create_tasks(self, tasks: List[CampaignTask]) -> List[CampaignTask]:
        if not tasks:
            return []
        response = self._client.table(self.TASKS_TABLE).insert([t.to_record() for t in tasks]).execute()
        return [CampaignTask.from_record(row) for row in response.data or []]

    async def claim_task(self, task: CampaignTask, correlation_handle: str, now: datetime) -> ClaimResult:
        response = self._client.table(self.TASKS_TABLE).update({
            "status": TaskStatus.CALLING.value,
            "attempts": task.attempts + 1,
            "last_attempt_at": now.isoformat(),
            "correlation_handle": correlation_handle,
            "channel_id": None,
            "connection_id": None,
            "call_result_detail": None,
            "updated_at": now.isoformat(),
        }).eq("id", task.id).eq("status", TaskStatus.PENDING.value).execute()

        if response.data:
            return ClaimResult.CLAIMED

        exists = self._client.table(self.TASKS_TABLE).select("id").eq("id", task.id).execute()
        return ClaimResult.ALREADY_CLAIMED if exists.data else ClaimResult.NOT_FOUND

    async def update_task(self, task_id: str, **fields) -> Optional[CampaignTask]:
        response = self._client.table(self.TASKS_TABLE).update(
            self._with_timestamp(fields)
        ).eq("id", task_id).execute()
        if not response.data:
            return None
        return CampaignTask.from_record(response.data[0])

    async def transition_task(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        **fields
    ) -> Optional[CampaignTask]:
        if not can_transition(from_status, to_status):
            raise ValueError(f"Illegal task transition: {from_status.value} -> {to_status.value}")
        response = self._client.table(self.TASKS_TABLE).update(
            self._with_timestamp({**fields, "status": to_status})
        ).eq("id", task_id).eq("status", from_status.value).execute()
        if not response.data:
            return None
        return CampaignTask.from_record(response.data[0])

    async def transition_tasks(
        self,
        campaign_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        **fields
    ) -> int:
        response = self._client.table(self.TASKS_TABLE).update(
            self._with_timestamp({**fields, "status": to_status})
        ).eq("campaign_id", campaign_id).in_("status", [s.value for s in from_statuses]).execute()
        return len(response.data or [])

    async def promote_due_retries(self, campaign_id: str, now: datetime) -> int:
        response = self._client.table(self.TASKS_TABLE).update(
            self._with_timestamp({"status": TaskStatus.PENDING})
        ).eq("campaign_id", campaign_id).eq(
            "status", TaskStatus.RETRY_PENDING.value
        ).lte("next_attempt_at", now.isoformat()).execute()
        return len(response.data or [])

    async def delete_tasks(self, campaign_id: str, statuses: Iterable[TaskStatus]) -> int:
        response = self._client.table(self.TASKS_TABLE).delete().eq(
            "campaign_id", campaign_id
        ).in_("status", [s.value for s in statuses]).execute()
        return len(response.data or [])

    async def count_by_status(self, campaign_id: str) -> Dict[str, int]:
        response = self._client.table(self.TASKS_TABLE).select("status").eq("campaign_id", campaign_id).execute()
        return dict(Counter(row["status"] for row in response.data or []))

    @staticmethod
    def _with_timestamp(fields: Dict[str, Any]) -> Dict[str, Any]:
        data = to_columns(fields)
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        return data
