"""
Billing Ledger Interface
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from campaign_dialer.domain.models.billing_leg import BillingLeg


class BillingLedger(ABC):
    """Append-only store of billing leg records"""

    @abstractmethod
    async def create_leg(self, leg: BillingLeg) -> BillingLeg:
        pass

    @abstractmethod
    async def finalize_leg(
        self,
        leg_id: str,
        duration_seconds: int,
        total_cost: float,
        finalized_at: datetime
    ) -> bool:
        """
        Fill in duration and cost of an open leg.

        Returns False (and changes nothing) if the leg is already finalized
        or does not exist.
        """
        pass

    @abstractmethod
    async def list_legs(self, task_id: str) -> List[BillingLeg]:
        pass
