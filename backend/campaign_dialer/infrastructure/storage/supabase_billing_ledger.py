"""
Supabase Billing Ledger
"""
from datetime import datetime
from typing import List

from supabase import Client, create_client

from campaign_dialer.domain.interfaces.billing_ledger import BillingLedger
from campaign_dialer.domain.models.billing_leg import BillingLeg


class SupabaseBillingLedger(BillingLedger):
    """
    Rows in `billing_legs`.

    Finalize only touches rows whose finalized_at is still null, so a
    second finalize of the same leg changes nothing.
    """

    TABLE = "billing_legs"

    def __init__(self, client: Client):
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseBillingLedger":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_service_key))

    async def create_leg(self, leg: BillingLeg) -> BillingLeg:
        response = self._client.table(self.TABLE).insert(leg.to_record()).execute()
        return BillingLeg.from_record(response.data[0]) if response.data else leg

    async def finalize_leg(
        self,
        leg_id: str,
        duration_seconds: int,
        total_cost: float,
        finalized_at: datetime
    ) -> bool:
        response = self._client.table(self.TABLE).update({
            "duration_seconds": duration_seconds,
            "total_cost": total_cost,
            "finalized_at": finalized_at.isoformat(),
        }).eq("id", leg_id).is_("finalized_at", "null").execute()
        return bool(response.data)

    async def list_legs(self, task_id: str) -> List[BillingLeg]:
        response = self._client.table(self.TABLE).select("*").eq("task_id", task_id).order("started_at").execute()
        return [BillingLeg.from_record(row) for row in response.data or []]
