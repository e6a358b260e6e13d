"""
Dispatch Module

Delivers inbox notifications to whichever transport a user is attached to.
"""

from .base import DeliveryResult, DispatchSink, Notification
from .composite import CompositeSink
from .registry import ConnectionRegistry
from .websocket import WebSocketSink

__all__ = [
    "DeliveryResult",
    "DispatchSink",
    "Notification",
    "CompositeSink",
    "ConnectionRegistry",
    "WebSocketSink",
]
