"""Collaborator interfaces consumed by the dialing engine"""

from .switch_control_port import SwitchControlPort, SwitchEventHandler
from .task_store import CampaignStore, TaskStore
from .billing_ledger import BillingLedger
from .notification_bus import NotificationBus

__all__ = [
    "SwitchControlPort",
    "SwitchEventHandler",
    "CampaignStore",
    "TaskStore",
    "BillingLedger",
    "NotificationBus",
]
