"""
Registry of live push-socket connections, keyed by user id.
"""

import logging
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    Maps user ids to their live socket.

    Insertion happens when a client registers, removal on disconnect. A user
    has at most one socket; a newer registration replaces the older one.
    All access happens on the event loop thread.
    """

    def __init__(self):
        self._connections: Dict[str, Any] = {}

    def register(self, user_id: str, connection: Any) -> Optional[Any]:
        """
        Attach a socket to a user.

        Returns:
            The socket this one replaced, if any
        """
        user_id = str(user_id)
        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        logger.info(f"User {user_id} registered for push updates")
        return previous if previous is not connection else None

    def unregister(self, user_id: str, connection: Any = None) -> bool:
        """
        Detach a user's socket.

        When connection is given, only remove the entry if it is still that
        socket (a stale disconnect must not drop a newer registration).
        """
        user_id = str(user_id)
        current = self._connections.get(user_id)
        if current is None or (connection is not None and current is not connection):
            return False
        del self._connections[user_id]
        logger.info(f"User {user_id} push connection closed")
        return True

    def unregister_connection(self, connection: Any) -> List[str]:
        """Remove every user entry pointing at this socket."""
        user_ids = [uid for uid, conn in self._connections.items() if conn is connection]
        for user_id in user_ids:
            self.unregister(user_id, connection)
        return user_ids

    def get(self, user_id: str) -> Optional[Any]:
        return self._connections.get(str(user_id))

    def is_connected(self, user_id: str) -> bool:
        return str(user_id) in self._connections

    def __len__(self) -> int:
        return len(self._connections)
