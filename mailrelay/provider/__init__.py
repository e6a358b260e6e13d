"""
Mail Provider Module

REST client for mail.tm-style disposable mailbox providers.
"""

from .client import MailProviderClient
from .models import MessageSummary, MessageDetail

__all__ = ["MailProviderClient", "MessageSummary", "MessageDetail"]
