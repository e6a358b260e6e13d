"""
Dispatch sink contract and the notification event it carries.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from ..provider.models import MessageSummary


class DeliveryResult(Enum):
    DELIVERED = "delivered"
    UNDELIVERABLE = "undeliverable"


@dataclass
class Notification:
    """A new message observed in a user's mailbox."""

    user_id: str
    mailbox_address: str
    message: MessageSummary
    observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mailboxAddress": self.mailbox_address,
            "message": self.message.to_dict(),
            "observedAt": self.observed_at.isoformat(),
        }


class DispatchSink(ABC):
    """
    Delivers a notification to one user.

    Return UNDELIVERABLE when no transport is attached for the user; raise
    DispatchError when the transport itself failed and a later attempt may
    succeed.
    """

    name = "sink"

    @abstractmethod
    async def deliver(self, user_id: str, notification: Notification) -> DeliveryResult:
        ...

    async def close(self):
        """Release transport resources."""
        pass
