"""
Campaign Dialer
Outbound campaign dialing engine
"""

__version__ = "1.0.0"
