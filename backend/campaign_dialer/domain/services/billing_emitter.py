"""
Billing Emitter
Creates and finalizes per-leg cost records for campaign calls
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from campaign_dialer.domain.interfaces.billing_ledger import BillingLedger
from campaign_dialer.domain.models.billing_leg import BillingLeg, Leg
from campaign_dialer.domain.models.campaign import Campaign
from campaign_dialer.domain.models.campaign_task import CampaignTask

logger = logging.getLogger(__name__)


class BillingEmitter:
    """
    Writes billing legs for the outbound (contact) and inbound (agent) side.

    Ledger failures are logged and swallowed: call handling never waits on
    or retries a billing write. A billed leg is never rolled back.
    """

    def __init__(
        self,
        ledger: BillingLedger,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        default_currency: str = "USD",
    ):
        self._ledger = ledger
        self._default_currency = default_currency
        self._clock = clock
        self._id_factory = id_factory

    async def open_outbound_leg(
        self,
        task: CampaignTask,
        campaign: Campaign,
        caller_number: str
    ) -> Optional[BillingLeg]:
        """Open the contact leg when the call is answered."""
        leg = BillingLeg(
            id=self._id_factory(),
            task_id=task.id,
            campaign_id=campaign.id,
            leg=Leg.OUTBOUND,
            from_number=caller_number,
            to_number=task.target_number,
            rate_per_minute=campaign.cost_per_minute,
            currency=campaign.currency or self._default_currency,
            started_at=self._clock(),
            merchant_id=campaign.merchant_id,
            notes=f"Campaign outbound leg: {campaign.name}",
        )
        return await self._create(leg)

    async def open_inbound_leg(
        self,
        task: CampaignTask,
        campaign: Campaign,
        agent_extension: str
    ) -> Optional[BillingLeg]:
        """Open the agent leg; only dual-billed campaigns have one."""
        if not campaign.dual_billing:
            return None

        leg = BillingLeg(
            id=self._id_factory(),
            task_id=task.id,
            campaign_id=campaign.id,
            leg=Leg.INBOUND,
            from_number=task.target_number,
            to_number=agent_extension,
            rate_per_minute=campaign.agent_cost_per_minute,
            currency=campaign.currency or self._default_currency,
            started_at=self._clock(),
            merchant_id=campaign.merchant_id,
            notes=f"Campaign agent leg: extension {agent_extension}, {campaign.name}",
        )
        return await self._create(leg)

    async def finalize_open_legs(
        self,
        task_id: str,
        legs: Optional[Iterable[Leg]] = None,
        ended_at: Optional[datetime] = None
    ) -> int:
        """
        Finalize every still-open leg of a task.

        Each leg's duration is measured from its own start time and written
        independently. Returns the number of legs finalized.
        """
        ended_at = ended_at or self._clock()
        wanted = set(legs) if legs is not None else None

        try:
            records = await self._ledger.list_legs(task_id)
        except Exception as e:
            logger.error(f"Failed to load billing legs for task {task_id}: {e}")
            return 0

        finalized = 0
        for record in records:
            if record.is_finalized:
                continue
            if wanted is not None and record.leg not in wanted:
                continue
            if await self.finalize_leg(record, ended_at):
                finalized += 1
        return finalized

    async def finalize_leg(self, leg: BillingLeg, ended_at: datetime) -> bool:
        """Finalize one leg. Already-finalized legs are left untouched."""
        if leg.is_finalized:
            return False

        duration = max(0, int((ended_at - leg.started_at).total_seconds()))
        cost = leg.compute_cost(duration)
        try:
            done = await self._ledger.finalize_leg(leg.id, duration, cost, ended_at)
        except Exception as e:
            logger.error(f"Failed to finalize {leg.leg.value} leg {leg.id}: {e}")
            return False

        if done:
            logger.info(
                f"Billing leg finalized: task={leg.task_id} leg={leg.leg.value} "
                f"duration={duration}s cost={cost} {leg.currency}"
            )
        return done

    async def list_legs(self, task_id: str) -> List[BillingLeg]:
        try:
            return await self._ledger.list_legs(task_id)
        except Exception as e:
            logger.error(f"Failed to load billing legs for task {task_id}: {e}")
            return []

    async def _create(self, leg: BillingLeg) -> Optional[BillingLeg]:
        try:
            created = await self._ledger.create_leg(leg)
            logger.info(
                f"Billing leg opened: task={leg.task_id} leg={leg.leg.value} "
                f"rate={leg.rate_per_minute}/min"
            )
            return created
        except Exception as e:
            logger.warning(f"Billing {leg.leg.value} record error for task {leg.task_id}: {e}")
            return None
