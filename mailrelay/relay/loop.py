"""
Inbox Relay Loop

Every N seconds, polls each active mailbox session, works out which messages
have not been relayed yet and hands them to the dispatch sink.

Blocking provider and database calls run in worker threads; the number of
sessions polled at once is bounded by max_concurrent_polls.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from .token_policy import TokenRefreshPolicy
from ..core.config import RelayConfig
from ..core.database import DatabaseManager, MailboxSession, utcnow
from ..core.exceptions import (
    DispatchError,
    InvalidCredentialsError,
    MailboxNotFoundError,
    MailProviderError,
    TransientError,
)
from ..dispatch.base import DeliveryResult, DispatchSink, Notification
from ..provider.client import MailProviderClient
from ..provider.models import MessageSummary


logger = logging.getLogger(__name__)


@dataclass
class PollOutcome:
    """What happened to one session during one tick."""

    status: str  # 'polled', 'skipped', 'error'
    notified: int = 0
    undeliverable: int = 0
    failed_deliveries: int = 0


def compute_delta(messages: Iterable[MessageSummary], observed_ids: Set[str]) -> List[MessageSummary]:
    """Messages whose id has not been observed yet, in provider order."""
    seen = set(observed_ids)
    delta = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        delta.append(message)
    return delta


class RelayLoop:
    """
    Relays new-mail notifications for active sessions.

    Features:
    - Fixed-interval ticks that never block the timer
    - Per-mailbox in-flight guard (a slow poll is not re-entered by the next tick)
    - Bounded concurrency per tick
    - One-shot token refresh through TokenRefreshPolicy
    - Per-session failure isolation (errors are logged and recorded on the session)

    Usage:
        loop = RelayLoop(db, client, sink, config.relay)

        # Run once
        stats = await loop.tick()

        # Run continuously
        await loop.run_forever()
    """

    def __init__(
        self,
        db: DatabaseManager,
        client: MailProviderClient,
        sink: DispatchSink,
        config: RelayConfig,
        policy: Optional[TokenRefreshPolicy] = None,
    ):
        """
        Initialize relay loop.

        Args:
            db: Session store
            client: Mail provider client
            sink: Where notifications go
            config: RelayConfig (interval, window, concurrency, notify mode)
            policy: TokenRefreshPolicy (created from client/db if None)
        """
        self.db = db
        self.client = client
        self.sink = sink
        self.config = config
        self.policy = policy or TokenRefreshPolicy(client, db)

        self.running = False
        self._in_flight: Set[str] = set()
        self._semaphore = asyncio.Semaphore(config.max_concurrent_polls)
        self._ticks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(
            f"RelayLoop initialized (interval: {config.poll_interval_seconds}s, "
            f"window: {config.active_window_minutes}m, concurrency: {config.max_concurrent_polls}, "
            f"notify_mode: {config.notify_mode})"
        )

    @property
    def active_window(self) -> timedelta:
        return timedelta(minutes=self.config.active_window_minutes)

    # ========================================================================
    # TICK
    # ========================================================================

    async def tick(self) -> Dict[str, int]:
        """
        Run one relay cycle over all active sessions.

        Returns:
            Dictionary with statistics:
                - active: Sessions inside the active window
                - polled: Sessions fetched successfully
                - notified: Notifications delivered
                - undeliverable: Notifications dropped for lack of a transport
                - failed_deliveries: Notifications left for the next tick after a transport failure
                - skipped: Sessions skipped (previous poll still in flight)
                - errors: Sessions that failed this tick
        """
        start_time = datetime.now()
        stats = {
            "active": 0,
            "polled": 0,
            "notified": 0,
            "undeliverable": 0,
            "failed_deliveries": 0,
            "skipped": 0,
            "errors": 0,
        }

        try:
            sessions = await asyncio.to_thread(self.db.get_active_sessions, self.active_window)
        except Exception as e:
            logger.error(f"Could not load active sessions: {e}", exc_info=True)
            stats["errors"] += 1
            return stats

        stats["active"] = len(sessions)
        if not sessions:
            logger.debug("No active sessions")
            return stats

        outcomes = await asyncio.gather(*(self._guarded_poll(session) for session in sessions))

        for outcome in outcomes:
            if outcome.status == "polled":
                stats["polled"] += 1
            elif outcome.status == "skipped":
                stats["skipped"] += 1
            else:
                stats["errors"] += 1
            stats["notified"] += outcome.notified
            stats["undeliverable"] += outcome.undeliverable
            stats["failed_deliveries"] += outcome.failed_deliveries

        duration = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"Relay tick complete ({duration:.1f}s): {stats['active']} active, {stats['polled']} polled, "
            f"{stats['notified']} notified, {stats['failed_deliveries']} failed deliveries, "
            f"{stats['skipped']} skipped, {stats['errors']} errors"
        )
        return stats

    async def _guarded_poll(self, session: MailboxSession) -> PollOutcome:
        """Poll one session unless it is already being polled; never raises."""
        address = session.mailbox_address
        if address in self._in_flight:
            logger.debug(f"Poll for {address} still in flight, skipping")
            return PollOutcome("skipped")

        self._in_flight.add(address)
        try:
            async with self._semaphore:
                return await self.poll_session(session)
        except InvalidCredentialsError as e:
            logger.warning(f"Credentials for {address} no longer valid: {e}")
            await self._record_failure(session, e)
        except MailboxNotFoundError as e:
            logger.warning(f"Mailbox {address} is gone on the provider side: {e}")
            await self._record_failure(session, e)
        except TransientError as e:
            logger.warning(f"Transient failure polling {address}, will retry next tick: {e}")
            await self._record_failure(session, e)
        except MailProviderError as e:
            logger.error(f"Provider error polling {address}: {e}")
            await self._record_failure(session, e)
        except Exception as e:
            logger.error(f"Unexpected error polling {address}: {e}", exc_info=True)
            await self._record_failure(session, e)
        finally:
            self._in_flight.discard(address)

        return PollOutcome("error")

    async def _record_failure(self, session: MailboxSession, error: Exception):
        await asyncio.to_thread(self.db.record_failure, session.id, f"{type(error).__name__}: {error}")

    # ========================================================================
    # SINGLE SESSION
    # ========================================================================

    async def poll_session(self, session: MailboxSession) -> PollOutcome:
        """
        Fetch one mailbox, relay unseen messages and record them as observed.

        A message is recorded as observed once the sink gave a definitive
        answer (delivered or undeliverable). If delivery raised or timed out,
        the message stays unobserved and is offered again next tick.

        Raises:
            MailProviderError subclasses from the fetch
        """
        messages = await asyncio.to_thread(self.policy.with_valid_token, session, self.client.list_messages)
        observed_at = utcnow()
        await asyncio.to_thread(self._after_fetch, session.id, observed_at)

        outcome = PollOutcome("polled")
        if not messages:
            return outcome

        observed_ids = await asyncio.to_thread(self.db.get_observed_ids, session.id)
        new_messages = compute_delta(messages, observed_ids)
        if not new_messages:
            return outcome

        logger.info(f"{len(new_messages)} new message(s) for {session.mailbox_address}")

        if self.config.notify_mode == "latest":
            # Newest first from the provider; older ones are settled silently
            to_notify = new_messages[:1]
            settled = {m.id for m in new_messages[1:]}
        else:
            to_notify = new_messages
            settled = set()

        for message in to_notify:
            notification = Notification(
                user_id=session.user_id,
                mailbox_address=session.mailbox_address,
                message=message,
                observed_at=observed_at,
            )
            result = await self._dispatch(notification)
            if result is None:
                outcome.failed_deliveries += 1
                continue

            settled.add(message.id)
            if result is DeliveryResult.DELIVERED:
                outcome.notified += 1
            else:
                outcome.undeliverable += 1

        if settled:
            # Provider lists newest first; store oldest first so eviction follows arrival order
            await asyncio.to_thread(
                self.db.mark_observed,
                session.id,
                [m.id for m in reversed(new_messages) if m.id in settled],
                self.config.max_observed_ids,
                {m.id for m in messages},
            )

        return outcome

    def _after_fetch(self, session_id: int, when: datetime):
        self.db.touch_last_access(session_id, when)
        self.db.clear_failure(session_id)

    async def _dispatch(self, notification: Notification) -> Optional[DeliveryResult]:
        """Deliver with a timeout; None means the transport failed."""
        user_id = notification.user_id
        try:
            result = await asyncio.wait_for(
                self.sink.deliver(user_id, notification), timeout=self.config.dispatch_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Delivery of {notification.message.id} to user {user_id} timed out "
                f"after {self.config.dispatch_timeout_seconds}s"
            )
            return None
        except DispatchError as e:
            logger.warning(f"Delivery of {notification.message.id} to user {user_id} failed: {e}")
            return None

        if result is DeliveryResult.UNDELIVERABLE:
            logger.info(f"No live transport for user {user_id}, dropping notice for {notification.message.id}")
        return result

    # ========================================================================
    # SCHEDULER
    # ========================================================================

    async def run_forever(self, interval_seconds: Optional[int] = None):
        """
        Launch a tick every interval until stop() is called.

        Args:
            interval_seconds: Override for poll_interval_seconds
        """
        interval = interval_seconds or self.config.poll_interval_seconds
        self.running = True
        self._stop_event = asyncio.Event()

        logger.info(f"Starting relay loop (interval: {interval}s)")

        try:
            while self.running:
                task = asyncio.create_task(self.tick())
                self._ticks.add(task)
                task.add_done_callback(self._ticks.discard)

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def stop(self, grace_seconds: float = 30):
        """
        Stop scheduling ticks and wait for outstanding ones.

        Args:
            grace_seconds: How long to wait for in-flight ticks
        """
        if not self.running and not self._ticks:
            return

        logger.info("Stopping relay loop...")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

        if self._ticks:
            logger.info(f"Waiting for {len(self._ticks)} in-flight tick(s)...")
            try:
                await asyncio.wait_for(asyncio.gather(*self._ticks, return_exceptions=True), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Some ticks did not complete within {grace_seconds} seconds")

        logger.info("Relay loop stopped")
