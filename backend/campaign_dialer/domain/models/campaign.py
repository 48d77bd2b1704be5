"""
Campaign Domain Models
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    INACTIVE = "inactive"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class DefaultHandling(str, Enum):
    """What happens to a call as soon as it is answered"""
    ASK = "ask"                     # Operator chooses from the console
    AI = "route-to-flow"            # Campaign's automated voice flow
    HUMAN = "route-to-human-queue"  # Campaign's human queue


class DtmfTransferType(str, Enum):
    """Target of a DTMF self-service transfer"""
    EXTENSION = "extension"
    IVR = "ivr"
    QUEUE = "queue"


class DtmfConfig(BaseModel):
    """DTMF self-service: contact presses a key to be transferred"""
    trigger_key: str = Field(..., min_length=1, max_length=5)
    transfer_type: DtmfTransferType = DtmfTransferType.EXTENSION
    transfer_target: Optional[str] = None
    prompt_audio_id: Optional[str] = None  # None = wait silently for a key
    timeout_seconds: int = Field(default=10, ge=1)
    max_replays: int = Field(default=3, ge=0)


class Campaign(BaseModel):
    """A calling effort: contacts dialed under one concurrency budget"""
    id: str
    name: str
    description: Optional[str] = None
    status: CampaignStatus = CampaignStatus.INACTIVE

    # Dialing
    max_concurrent_calls: int = Field(default=5, ge=1)
    max_wait_time: int = Field(default=300, ge=1, description="Seconds to wait for a call to finish")
    retry_interval: float = Field(default=300, ge=0, description="Fixed seconds between attempts")
    wrapup_time: float = Field(default=0, ge=0, description="Seconds to hold the slot after a call")
    sip_trunk: Optional[str] = None  # Trunk name; None = local outbound route
    caller_id_override: Optional[str] = None
    operator_extension: Optional[str] = None

    # Post-answer handling
    default_handling: DefaultHandling = DefaultHandling.ASK
    ai_flow_id: Optional[str] = None
    dtmf: Optional[DtmfConfig] = None

    # Billing
    cost_per_minute: float = Field(default=0.0, ge=0)
    agent_cost_per_minute: float = Field(default=0.0, ge=0)
    dual_billing: bool = False
    currency: Optional[str] = None  # None = engine default currency
    merchant_id: Optional[str] = None

    # Scheduling
    scheduled_start_time: Optional[datetime] = None
    timezone: str = "UTC"

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == CampaignStatus.ACTIVE

    @property
    def handles_automatically(self) -> bool:
        return self.default_handling != DefaultHandling.ASK

    def correlation_timeout(self, grace_seconds: float) -> float:
        """Upper bound on waiting for a call's terminal event."""
        return self.max_wait_time + grace_seconds
