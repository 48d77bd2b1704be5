"""
Switch Event Models
Protocol-neutral view of the switch's call-progress notifications
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime, timezone
from enum import Enum

from campaign_dialer.domain.models.campaign_task import CallOutcome


class SwitchEventType(str, Enum):
    """Categories of inbound events the engine consumes"""
    ACKNOWLEDGED = "acknowledged"  # Origination accepted, connection id assigned
    DIAL_OUTCOME = "dial_outcome"  # answered / busy / no-answer / congestion
    ENDED = "ended"                # Connection torn down


class SwitchEvent(BaseModel):
    """
    Normalized switch event.

    correlation_handle is only present on acknowledgements; later events
    carry the switch-assigned connection_id. An acknowledgement may also
    carry the dial outcome when the switch settles both at once.
    """
    type: SwitchEventType
    connection_id: Optional[str] = None
    channel_id: Optional[str] = None
    correlation_handle: Optional[str] = None
    outcome: Optional[CallOutcome] = None
    success: bool = True
    cause: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OriginateRequest(BaseModel):
    """Everything the switch needs to place one outbound call"""
    channel: str
    context: str
    caller_id: str
    correlation_handle: str
    extension: str = "s"
    priority: int = 1
    timeout_seconds: int = 30
    variables: Dict[str, str] = Field(default_factory=dict)
