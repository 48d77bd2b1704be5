"""
Dialer Exceptions
"""


class DialerError(Exception):
    """Base class for errors surfaced to operators."""


class CampaignNotFoundError(DialerError):
    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign not found: {campaign_id}")
        self.campaign_id = campaign_id


class TaskNotFoundError(DialerError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidHandlingError(DialerError):
    """Post-answer handling request that cannot be carried out."""


class SwitchError(Exception):
    """Switch unreachable or request rejected."""
