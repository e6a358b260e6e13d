"""
Database models and management for the mailbox notification relay.

This module contains the SQLAlchemy models for the session store and the
DatabaseManager class for database operations.
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Set, Iterable
import logging

from .exceptions import SessionNotFoundError

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# SESSIONS
# ============================================================================


class MailboxSession(Base):
    """One tracked disposable mailbox and the credentials used to poll it."""

    __tablename__ = "mailbox_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)  # Telegram user id / push-socket id
    mailbox_address = Column(String(255), unique=True, nullable=False, index=True)
    credential_secret = Column(String(255), nullable=False)
    auth_token = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    last_access = Column(DateTime, default=utcnow, index=True)

    # Relay bookkeeping, read by whatever retires broken mailboxes
    last_error = Column(Text)
    last_error_at = Column(DateTime)
    consecutive_failures = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<MailboxSession(id={self.id}, user='{self.user_id}', address='{self.mailbox_address}')>"


class ObservedMessage(Base):
    """Message ids already relayed for a session."""

    __tablename__ = "observed_messages"

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("mailbox_sessions.id", ondelete="CASCADE"), nullable=False)
    message_id = Column(String(255), nullable=False)
    observed_at = Column(DateTime, default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("session_id", "message_id", name="uq_observed_session_message"),
        Index("idx_observed_session_date", "session_id", "observed_at"),
    )

    def __repr__(self):
        return f"<ObservedMessage(session_id={self.session_id}, message_id='{self.message_id}')>"


# ============================================================================
# DATABASE MANAGER
# ============================================================================


class DatabaseManager:
    """Session store operations."""

    def __init__(self, connection_string: str):
        """Initialize database manager with connection string."""
        self.logger = logging.getLogger(__name__)
        self.connection_string = connection_string

        if connection_string.startswith("sqlite"):
            # SQLite has no pool sizing; relay threads share the connection
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in connection_string or connection_string == "sqlite://":
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs = {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True}

        self.engine = create_engine(connection_string, echo=False, **engine_kwargs)

        # Rows are handed to the relay after the session closes
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(self.engine)
        self.logger.info("Database tables created successfully")

    def drop_tables(self):
        """Drop all database tables (use with caution!)."""
        Base.metadata.drop_all(self.engine)
        self.logger.warning("All database tables dropped")

    def get_session(self):
        """Get a new database session."""
        return self.SessionLocal()

    # ========================================================================
    # SESSION METHODS
    # ========================================================================

    def create_session(
        self, user_id: str, mailbox_address: str, credential_secret: str, auth_token: Optional[str] = None
    ) -> MailboxSession:
        """Store a new mailbox session, or re-attach an existing address to this user."""
        session = self.get_session()
        try:
            address = mailbox_address.lower()
            record = session.query(MailboxSession).filter(MailboxSession.mailbox_address == address).first()
            if record is None:
                record = MailboxSession(mailbox_address=address)
                session.add(record)

            record.user_id = str(user_id)
            record.credential_secret = credential_secret
            record.auth_token = auth_token
            record.last_access = utcnow()
            record.last_error = None
            record.consecutive_failures = 0

            session.commit()
            session.refresh(record)
            self.logger.info(f"Stored session for {address} (user: {user_id})")
            return record
        except Exception as e:
            session.rollback()
            self.logger.error(f"Failed to store session for {mailbox_address}: {e}")
            raise
        finally:
            session.close()

    def get_session_by_address(self, mailbox_address: str) -> Optional[MailboxSession]:
        """Find session by mailbox address."""
        session = self.get_session()
        try:
            return (
                session.query(MailboxSession)
                .filter(MailboxSession.mailbox_address == mailbox_address.lower())
                .first()
            )
        finally:
            session.close()

    def require_session(self, mailbox_address: str) -> MailboxSession:
        """Like get_session_by_address, but raises SessionNotFoundError."""
        record = self.get_session_by_address(mailbox_address)
        if record is None:
            raise SessionNotFoundError(f"No session stored for {mailbox_address}")
        return record

    def get_sessions_for_user(self, user_id: str) -> List[MailboxSession]:
        """All sessions owned by a user, most recently used first."""
        session = self.get_session()
        try:
            return (
                session.query(MailboxSession)
                .filter(MailboxSession.user_id == str(user_id))
                .order_by(MailboxSession.last_access.desc())
                .all()
            )
        finally:
            session.close()

    def list_sessions(self) -> List[MailboxSession]:
        """All stored sessions."""
        session = self.get_session()
        try:
            return session.query(MailboxSession).order_by(MailboxSession.last_access.desc()).all()
        finally:
            session.close()

    def get_active_sessions(self, active_window: timedelta, now: Optional[datetime] = None) -> List[MailboxSession]:
        """Sessions whose last_access falls inside the trailing active window."""
        cutoff = (now or utcnow()) - active_window
        session = self.get_session()
        try:
            return (
                session.query(MailboxSession)
                .filter(MailboxSession.last_access >= cutoff)
                .order_by(MailboxSession.id)
                .all()
            )
        finally:
            session.close()

    def get_token(self, mailbox_address: str) -> Optional[str]:
        """Current stored token for a mailbox."""
        return self.require_session(mailbox_address).auth_token

    def update_token(self, mailbox_address: str, auth_token: str):
        """Replace the stored token for a mailbox."""
        session = self.get_session()
        try:
            record = (
                session.query(MailboxSession)
                .filter(MailboxSession.mailbox_address == mailbox_address.lower())
                .first()
            )
            if record is None:
                raise SessionNotFoundError(f"No session stored for {mailbox_address}")
            record.auth_token = auth_token
            session.commit()
            self.logger.info(f"Stored refreshed token for {mailbox_address}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def touch_last_access(self, session_id: int, when: Optional[datetime] = None):
        """Advance last_access after a successful fetch."""
        session = self.get_session()
        try:
            record = session.get(MailboxSession, session_id)
            if record:
                record.last_access = when or utcnow()
                session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Failed to update last_access for session {session_id}: {e}")
            raise
        finally:
            session.close()

    def record_failure(self, session_id: int, error: str):
        """Remember the latest relay failure for a session."""
        session = self.get_session()
        try:
            record = session.get(MailboxSession, session_id)
            if record:
                record.last_error = error[:2000]
                record.last_error_at = utcnow()
                record.consecutive_failures = (record.consecutive_failures or 0) + 1
                session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Failed to record failure for session {session_id}: {e}")
        finally:
            session.close()

    def clear_failure(self, session_id: int):
        """Reset failure bookkeeping after a successful poll."""
        session = self.get_session()
        try:
            record = session.get(MailboxSession, session_id)
            if record and (record.consecutive_failures or record.last_error):
                record.last_error = None
                record.consecutive_failures = 0
                session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Failed to clear failure for session {session_id}: {e}")
        finally:
            session.close()

    # ========================================================================
    # OBSERVED MESSAGE METHODS
    # ========================================================================

    def get_observed_ids(self, session_id: int) -> Set[str]:
        """Message ids already relayed for a session."""
        session = self.get_session()
        try:
            rows = session.query(ObservedMessage.message_id).filter(ObservedMessage.session_id == session_id).all()
            return {row[0] for row in rows}
        finally:
            session.close()

    def mark_observed(
        self,
        session_id: int,
        message_ids: Iterable[str],
        max_ids: Optional[int] = None,
        keep_ids: Optional[Set[str]] = None,
    ) -> int:
        """
        Add message ids to a session's observed set.

        Args:
            session_id: MailboxSession id
            message_ids: Ids to add (already-present ids are ignored)
            max_ids: Keep at most this many ids, evicting the oldest
            keep_ids: Ids never evicted (the provider still lists them); the
                set may exceed max_ids while they remain listed

        Returns:
            Number of ids added
        """
        session = self.get_session()
        try:
            existing = {
                row[0]
                for row in session.query(ObservedMessage.message_id).filter(ObservedMessage.session_id == session_id)
            }
            now = utcnow()
            added = 0
            for message_id in message_ids:
                if message_id in existing:
                    continue
                session.add(ObservedMessage(session_id=session_id, message_id=message_id, observed_at=now))
                existing.add(message_id)
                added += 1

            session.flush()

            if max_ids and len(existing) > max_ids:
                query = session.query(ObservedMessage.id).filter(ObservedMessage.session_id == session_id)
                if keep_ids:
                    query = query.filter(ObservedMessage.message_id.notin_(list(keep_ids)))
                overflow = (
                    query
                    .order_by(ObservedMessage.observed_at.asc(), ObservedMessage.id.asc())
                    .limit(len(existing) - max_ids)
                    .all()
                )
                if overflow:
                    session.query(ObservedMessage).filter(
                        ObservedMessage.id.in_([row[0] for row in overflow])
                    ).delete(synchronize_session=False)
                self.logger.debug(f"Evicted {len(overflow)} observed ids for session {session_id}")

            session.commit()
            return added
        except Exception as e:
            session.rollback()
            self.logger.error(f"Failed to mark messages observed for session {session_id}: {e}")
            raise
        finally:
            session.close()

