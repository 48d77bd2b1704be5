"""Domain models"""

from .campaign import (
    CampaignStatus,
    DefaultHandling,
    DtmfTransferType,
    DtmfConfig,
    Campaign,
)

from .campaign_task import (
    TaskStatus,
    CallOutcome,
    HandledBy,
    ClaimResult,
    CampaignTask,
)

from .billing_leg import (
    Leg,
    BillingLeg,
)

from .switch_event import (
    SwitchEventType,
    SwitchEvent,
    OriginateRequest,
)

from .notification import (
    NotificationKind,
    Notification,
)

__all__ = [
    # Campaign
    "CampaignStatus",
    "DefaultHandling",
    "DtmfTransferType",
    "DtmfConfig",
    "Campaign",
    # Tasks
    "TaskStatus",
    "CallOutcome",
    "HandledBy",
    "ClaimResult",
    "CampaignTask",
    # Billing
    "Leg",
    "BillingLeg",
    # Switch
    "SwitchEventType",
    "SwitchEvent",
    "OriginateRequest",
    # Notifications
    "NotificationKind",
    "Notification",
]
