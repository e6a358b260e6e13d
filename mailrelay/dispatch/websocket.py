"""
Push-socket dispatch sink.

Sends {"type": "inbox_update", "userId": ..., "data": ...} envelopes to the
socket registered for the user.
"""

import logging

from .base import DeliveryResult, DispatchSink, Notification
from .registry import ConnectionRegistry


logger = logging.getLogger(__name__)


class WebSocketSink(DispatchSink):
    """Delivers notifications over sockets held in a ConnectionRegistry."""

    name = "websocket"

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    @staticmethod
    def build_envelope(user_id: str, notification: Notification) -> dict:
        return {"type": "inbox_update", "userId": str(user_id), "data": notification.to_dict()}

    async def deliver(self, user_id: str, notification: Notification) -> DeliveryResult:
        connection = self.registry.get(user_id)
        if connection is None:
            return DeliveryResult.UNDELIVERABLE

        try:
            await connection.send_json(self.build_envelope(user_id, notification))
        except Exception as e:
            # Closed/broken socket: forget it, the client re-registers on reconnect
            logger.warning(f"Push to user {user_id} failed, dropping connection: {e}")
            self.registry.unregister(user_id, connection)
            return DeliveryResult.UNDELIVERABLE

        logger.debug(f"Pushed message {notification.message.id} to user {user_id}")
        return DeliveryResult.DELIVERED
