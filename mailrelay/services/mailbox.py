"""
Mailbox Service

User-initiated mailbox operations (check inbox, read, delete, recover,
register). Shares the session store and token refresh policy with the relay
loop, so a token refreshed here is the one the relay uses next tick.
"""

import logging
from typing import List, Optional

from ..core.database import DatabaseManager, MailboxSession
from ..provider.client import MailProviderClient
from ..provider.models import MessageDetail, MessageSummary
from ..relay.token_policy import TokenRefreshPolicy


logger = logging.getLogger(__name__)


class MailboxService:
    """
    Inbox operations on behalf of a user.

    Usage:
        service = MailboxService(db, client)
        messages = service.check_inbox("temp123456@example.test")
    """

    def __init__(
        self,
        db: DatabaseManager,
        client: MailProviderClient,
        policy: Optional[TokenRefreshPolicy] = None,
    ):
        self.db = db
        self.client = client
        self.policy = policy or TokenRefreshPolicy(client, db)

    def register(
        self,
        user_id: str,
        mailbox_address: str,
        secret: str,
        create_account: bool = False,
    ) -> MailboxSession:
        """
        Start tracking a mailbox for a user.

        The caller chooses address and secret. With create_account the
        provider account is created first.

        Raises:
            MailProviderError: Account creation failed
            InvalidCredentialsError: Provider rejected the credentials
        """
        if create_account:
            self.client.create_account(mailbox_address, secret)

        token = self.client.authenticate(mailbox_address, secret)
        session = self.db.create_session(user_id, mailbox_address, secret, token)
        logger.info(f"Registered {session.mailbox_address} for user {user_id}")
        return session

    def recover(self, mailbox_address: str, user_id: Optional[str] = None) -> MailboxSession:
        """
        Re-authenticate a stored mailbox and make it active again.

        Args:
            mailbox_address: Stored mailbox
            user_id: Re-attach the session to this user (e.g. a new chat)

        Raises:
            SessionNotFoundError: Address unknown to the store
            InvalidCredentialsError: Stored credential no longer accepted
        """
        session = self.db.require_session(mailbox_address)
        token = self.client.authenticate(session.mailbox_address, session.credential_secret)

        if user_id is not None and str(user_id) != session.user_id:
            session = self.db.create_session(user_id, session.mailbox_address, session.credential_secret, token)
        else:
            self.db.update_token(session.mailbox_address, token)
            self.db.touch_last_access(session.id)
            session.auth_token = token

        logger.info(f"Recovered {session.mailbox_address} for user {session.user_id}")
        return session

    def check_inbox(self, mailbox_address: str) -> List[MessageSummary]:
        """List messages and mark the session as recently used."""
        session = self.db.require_session(mailbox_address)
        messages = self.policy.with_valid_token(session, self.client.list_messages)
        self.db.touch_last_access(session.id)
        return messages

    def read_message(self, mailbox_address: str, message_id: str) -> MessageDetail:
        """Fetch a full message."""
        session = self.db.require_session(mailbox_address)
        message = self.policy.with_valid_token(
            session, lambda token: self.client.fetch_message(token, message_id)
        )
        self.db.touch_last_access(session.id)
        return message

    def delete_message(self, mailbox_address: str, message_id: str) -> bool:
        """Delete a message (already-deleted counts as success)."""
        session = self.db.require_session(mailbox_address)
        deleted = self.policy.with_valid_token(
            session, lambda token: self.client.delete_message(token, message_id)
        )
        self.db.touch_last_access(session.id)
        return deleted
