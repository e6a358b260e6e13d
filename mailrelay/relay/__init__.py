"""
Relay Module

Recurring inbox synchronization and notification relay.
"""

from .token_policy import TokenRefreshPolicy
from .loop import RelayLoop

__all__ = ["TokenRefreshPolicy", "RelayLoop"]
