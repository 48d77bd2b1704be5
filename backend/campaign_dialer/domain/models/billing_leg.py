"""
Billing Leg Model
Append-only cost ledger row for one side of a campaign call
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class Leg(str, Enum):
    """Side of a call's cost accounting"""
    OUTBOUND = "outbound"  # Dialer -> contact
    INBOUND = "inbound"    # Agent answering the campaign call


class BillingLeg(BaseModel):
    """
    Cost record for a single leg.

    Created with zero duration when the leg starts and finalized once,
    when the leg ends. A finalized record is never changed again.
    """
    id: str
    task_id: str
    campaign_id: str
    leg: Leg
    from_number: str
    to_number: str

    rate_per_minute: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    duration_seconds: int = Field(default=0, ge=0)
    total_cost: float = Field(default=0.0, ge=0)

    started_at: datetime
    finalized_at: Optional[datetime] = None
    merchant_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    @property
    def rate_per_second(self) -> float:
        return self.rate_per_minute / 60

    def compute_cost(self, duration_seconds: int) -> float:
        """Cost of the leg for the given duration, per-second granularity."""
        return round(duration_seconds * self.rate_per_second, 4)

    def to_record(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict) -> "BillingLeg":
        return cls.model_validate(data)
