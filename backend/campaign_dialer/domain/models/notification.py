"""
Live Notification Models
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from enum import Enum


class NotificationKind(str, Enum):
    """Events published to operator consoles"""
    CALL_ANSWERED = "campaign:call-answered"
    CALL_ENDED = "campaign:call-ended"
    STATUS_CHANGED = "campaign:status-changed"
    TASK_HANDLED = "campaign:task-handled"


class Notification(BaseModel):
    """Observational event; never authoritative"""
    kind: NotificationKind
    campaign_id: str
    task_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> dict:
        """Flat JSON-ready message for the pub/sub channel."""
        return {
            "event": self.kind.value,
            "campaign_id": self.campaign_id,
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
            **self.payload,
        }
