"""
Token refresh policy.

Runs a provider operation with the session's stored token and, when the
provider rejects the token, re-authenticates once, stores the new token and
retries once.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, TypeVar

from ..core.database import DatabaseManager, MailboxSession
from ..core.exceptions import AuthExpiredError, InvalidCredentialsError
from ..provider.client import MailProviderClient


logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenRefreshPolicy:
    """
    One-shot token refresh around provider calls.

    Refreshes are serialized per mailbox so that two callers hitting an
    expired token at the same time produce one authenticate call; the second
    caller picks up the token the first one stored.

    Usage:
        policy = TokenRefreshPolicy(client, db)
        messages = policy.with_valid_token(session, client.list_messages)
    """

    def __init__(self, client: MailProviderClient, db: DatabaseManager):
        self.client = client
        self.db = db
        self._locks = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, mailbox_address: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[mailbox_address]

    def with_valid_token(self, session: MailboxSession, operation: Callable[[str], T]) -> T:
        """
        Run operation(token), refreshing the token at most once.

        Args:
            session: MailboxSession (its auth_token is updated in place on refresh)
            operation: Callable taking a bearer token

        Returns:
            Whatever operation returns

        Raises:
            InvalidCredentialsError: Re-authentication failed, or the fresh token was rejected too
            TransientError: Propagated from the provider
        """
        used_token = session.auth_token
        try:
            return operation(used_token)
        except AuthExpiredError:
            logger.info(f"Token expired for {session.mailbox_address}, refreshing")

        new_token = self._refresh(session, used_token)

        try:
            return operation(new_token)
        except AuthExpiredError as e:
            logger.warning(f"Refreshed token rejected for {session.mailbox_address}")
            raise InvalidCredentialsError(
                f"Token for {session.mailbox_address} rejected after refresh", e.status_code
            ) from e

    def _refresh(self, session: MailboxSession, rejected_token: str) -> str:
        """Obtain and store a token newer than rejected_token."""
        with self._lock_for(session.mailbox_address):
            stored = self.db.get_token(session.mailbox_address)
            if stored and stored != rejected_token:
                logger.debug(f"Token for {session.mailbox_address} already refreshed by another caller")
                session.auth_token = stored
                return stored

            token = self.client.authenticate(session.mailbox_address, session.credential_secret)
            self.db.update_token(session.mailbox_address, token)
            session.auth_token = token
            return token
