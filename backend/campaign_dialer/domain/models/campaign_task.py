"""
Campaign Task Model
Represents one contact to be dialed within a campaign
"""
from pydantic import BaseModel, Field
from typing import Optional, Set, Dict
from datetime import datetime, timezone, timedelta
from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle status of a campaign task"""
    PENDING = "pending"
    CALLING = "calling"
    ANSWERED = "answered"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CONGESTION = "congestion"
    ERROR = "error"
    RETRY_PENDING = "retry-pending"
    FAILED = "failed"
    AI_HANDLED = "ai-handled"
    TRANSFERRED = "transferred"
    WAITING_AGENT = "waiting-agent"
    CANCELLED = "cancelled"


class CallOutcome(str, Enum):
    """Terminal outcome of one dial attempt"""
    ANSWERED = "answered"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    CONGESTION = "congestion"
    ERROR = "error"


class HandledBy(str, Enum):
    """Which path resolved an answered call"""
    HUMAN = "human"
    AI = "ai"
    QUEUE = "queue"


class ClaimResult(str, Enum):
    """Result of the conditional pending -> calling update"""
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


HANDLED_STATUSES: Set[TaskStatus] = {
    TaskStatus.AI_HANDLED,
    TaskStatus.TRANSFERRED,
    TaskStatus.WAITING_AGENT,
}

TERMINAL_STATUSES: Set[TaskStatus] = HANDLED_STATUSES | {
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

# Statuses a stopped campaign cancels; in-flight calls are left to drain
CANCELLABLE_STATUSES: Set[TaskStatus] = {
    TaskStatus.PENDING,
    TaskStatus.RETRY_PENDING,
}

OUTCOME_STATUS: Dict[CallOutcome, TaskStatus] = {
    CallOutcome.ANSWERED: TaskStatus.ANSWERED,
    CallOutcome.BUSY: TaskStatus.BUSY,
    CallOutcome.NO_ANSWER: TaskStatus.NO_ANSWER,
    CallOutcome.CONGESTION: TaskStatus.CONGESTION,
    CallOutcome.ERROR: TaskStatus.ERROR,
}

# Allowed transitions; cancellation is handled separately
TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.CALLING},
    TaskStatus.CALLING: {
        TaskStatus.ANSWERED,
        TaskStatus.BUSY,
        TaskStatus.NO_ANSWER,
        TaskStatus.CONGESTION,
        TaskStatus.ERROR,
    },
    TaskStatus.BUSY: {TaskStatus.RETRY_PENDING, TaskStatus.FAILED},
    TaskStatus.NO_ANSWER: {TaskStatus.RETRY_PENDING, TaskStatus.FAILED},
    TaskStatus.CONGESTION: {TaskStatus.RETRY_PENDING, TaskStatus.FAILED},
    TaskStatus.ERROR: {TaskStatus.RETRY_PENDING, TaskStatus.FAILED},
    TaskStatus.RETRY_PENDING: {TaskStatus.PENDING},
    TaskStatus.ANSWERED: set(HANDLED_STATUSES),
    # A parked call is picked up by an agent
    TaskStatus.WAITING_AGENT: {TaskStatus.TRANSFERRED},
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Check whether a task may move from current to target."""
    if target == TaskStatus.CANCELLED:
        return current not in TERMINAL_STATUSES
    return target in TRANSITIONS.get(current, set())


class CampaignTask(BaseModel):
    """
    One contact to be dialed within a campaign.

    The connection identifiers are assigned once the switch acknowledges
    origination; channel_id is used for redirect/hangup and connection_id
    for matching subsequent progress events.
    """

    # Identity
    id: str = Field(..., description="Task identifier (UUID)")
    campaign_id: str = Field(..., description="Campaign this task belongs to")

    # Contact
    target_number: str = Field(..., description="Number to dial")
    contact_name: str = Field(default="")

    # Status tracking
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    # Timing
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    # Correlation
    correlation_handle: Optional[str] = None
    channel_id: Optional[str] = None
    connection_id: Optional[str] = None

    # Result tracking
    call_result_detail: Optional[str] = None
    result: Optional[str] = None
    handled_by: Optional[HandledBy] = None
    transferred_to: Optional[str] = None

    @property
    def display(self) -> str:
        if self.contact_name:
            return f"{self.contact_name} <{self.target_number}>"
        return self.target_number

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts < self.max_attempts

    def retry_time(self, retry_interval: float, now: Optional[datetime] = None) -> datetime:
        """When the next attempt becomes eligible."""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=retry_interval)

    def to_record(self) -> dict:
        """Serialize for the task store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict) -> "CampaignTask":
        """Deserialize from the task store."""
        return cls.model_validate(data)

    def __repr__(self) -> str:
        return (
            f"CampaignTask(id={self.id[:8]}..., "
            f"number={self.target_number}, "
            f"status={self.status.value}, "
            f"attempt={self.attempts}/{self.max_attempts})"
        )
