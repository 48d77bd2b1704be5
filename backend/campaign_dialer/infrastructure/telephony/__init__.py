"""
Switch Control Package
"""
from campaign_dialer.infrastructure.telephony.ami_switch_port import AmiSwitchPort
from campaign_dialer.infrastructure.telephony.factory import SwitchPortFactory

__all__ = ["AmiSwitchPort", "SwitchPortFactory"]
