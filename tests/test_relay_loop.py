"""
Unit tests for the relay loop with a mocked provider and recording sinks.

Tests the relay logic that:
- Polls only sessions inside the active window
- Notifies each unseen message exactly once, in provider order
- Isolates per-session failures
- Retries deliveries that failed in transport
- Skips sessions whose previous poll is still running
"""

import asyncio
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from mailrelay.core.database import utcnow
from mailrelay.core.exceptions import (
    AuthExpiredError,
    DispatchError,
    MailboxNotFoundError,
    TransientError,
)
from mailrelay.dispatch.base import DeliveryResult, DispatchSink
from mailrelay.dispatch.composite import CompositeSink
from mailrelay.relay.loop import RelayLoop, compute_delta
from tests.factories import HangingSink, ProviderTestFactory, RecordingSink


def summaries(*ids):
    return [ProviderTestFactory.create_summary(message_id) for message_id in ids]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def session(test_db):
    return test_db.create_session("42", "temp@x.test", "secret", "tok")


@pytest.fixture
def relay(test_db, mock_client, sink, relay_config):
    return RelayLoop(test_db, mock_client, sink, relay_config)


class FlakySink(DispatchSink):
    """Fails in transport for the first N deliveries, then delivers."""

    name = "flaky"

    def __init__(self, failures: int):
        self.failures = failures
        self.delivered = []

    async def deliver(self, user_id, notification):
        if self.failures > 0:
            self.failures -= 1
            raise DispatchError("socket reset")
        self.delivered.append(notification.message.id)
        return DeliveryResult.DELIVERED


class TestComputeDelta:
    """Pure delta computation."""

    def test_keeps_provider_order(self):
        delta = compute_delta(summaries("m3", "m2", "m1"), {"m2"})

        assert [m.id for m in delta] == ["m3", "m1"]

    def test_drops_duplicate_ids(self):
        delta = compute_delta(summaries("m1", "m1"), set())

        assert [m.id for m in delta] == ["m1"]

    def test_everything_observed(self):
        assert compute_delta(summaries("m1"), {"m1"}) == []


class TestRelayTick:
    """Full tick behavior."""

    @pytest.mark.asyncio
    async def test_new_messages_notified_once(self, relay, session, mock_client, sink, test_db):
        mock_client.list_messages.return_value = summaries("m1", "m2")

        stats = await relay.tick()

        assert stats["active"] == 1
        assert stats["polled"] == 1
        assert stats["notified"] == 2
        assert sink.message_ids == ["m1", "m2"]
        assert all(user_id == "42" for user_id, _ in sink.deliveries)
        assert sink.deliveries[0][1].mailbox_address == "temp@x.test"
        assert test_db.get_observed_ids(session.id) == {"m1", "m2"}

        stats = await relay.tick()

        assert stats["notified"] == 0
        assert len(sink.deliveries) == 2

    @pytest.mark.asyncio
    async def test_only_new_arrivals_notified(self, relay, session, mock_client, sink):
        mock_client.list_messages.return_value = summaries("m1")
        await relay.tick()

        mock_client.list_messages.return_value = summaries("m2", "m1")
        await relay.tick()

        assert sink.message_ids == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_empty_inbox(self, relay, session, mock_client, sink, test_db):
        mock_client.list_messages.return_value = []

        stats = await relay.tick()

        assert stats["polled"] == 1
        assert stats["notified"] == 0
        assert sink.deliveries == []
        assert test_db.get_observed_ids(session.id) == set()

    @pytest.mark.asyncio
    async def test_successful_fetch_advances_last_access(self, relay, session, mock_client, test_db):
        before = session.last_access
        mock_client.list_messages.return_value = []

        await relay.tick()

        assert test_db.get_session_by_address("temp@x.test").last_access >= before

    @pytest.mark.asyncio
    async def test_no_sessions(self, relay, mock_client):
        stats = await relay.tick()

        assert stats["active"] == 0
        mock_client.list_messages.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_session_not_polled(self, relay, session, mock_client, test_db):
        test_db.touch_last_access(session.id, utcnow() - timedelta(hours=2))

        stats = await relay.tick()

        assert stats["active"] == 0
        mock_client.list_messages.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_isolated_per_session(self, relay, mock_client, sink, test_db):
        session_a = test_db.create_session("1", "a@x.test", "secret", "tok-a")
        test_db.create_session("2", "b@x.test", "secret", "tok-b")

        def list_messages(token):
            if token == "tok-a":
                raise TransientError("read timed out")
            return summaries("b1")

        mock_client.list_messages.side_effect = list_messages

        stats = await relay.tick()

        assert stats["errors"] == 1
        assert stats["polled"] == 1
        assert sink.deliveries[0][0] == "2"
        assert sink.message_ids == ["b1"]

        record = test_db.get_session_by_address("a@x.test")
        assert record.consecutive_failures == 1
        assert "TransientError" in record.last_error
        assert test_db.get_observed_ids(session_a.id) == set()

    @pytest.mark.asyncio
    async def test_success_clears_failure(self, relay, session, mock_client, test_db):
        test_db.record_failure(session.id, "TransientError: earlier")
        mock_client.list_messages.return_value = []

        await relay.tick()

        record = test_db.get_session_by_address("temp@x.test")
        assert record.consecutive_failures == 0
        assert record.last_error is None

    @pytest.mark.asyncio
    async def test_deleted_mailbox_recorded_not_removed(self, relay, session, mock_client, test_db):
        mock_client.list_messages.side_effect = MailboxNotFoundError("/messages not found", 404)

        stats = await relay.tick()

        assert stats["errors"] == 1
        record = test_db.get_session_by_address("temp@x.test")
        assert record is not None
        assert "MailboxNotFoundError" in record.last_error

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_during_tick(self, relay, session, mock_client, sink, test_db):
        mock_client.authenticate.return_value = "fresh"

        def list_messages(token):
            if token == "tok":
                raise AuthExpiredError("401", 401)
            return summaries("m1")

        mock_client.list_messages.side_effect = list_messages

        stats = await relay.tick()

        assert stats["notified"] == 1
        mock_client.authenticate.assert_called_once_with("temp@x.test", "secret")
        assert test_db.get_token("temp@x.test") == "fresh"

    @pytest.mark.asyncio
    async def test_rejected_fresh_token_recorded_as_invalid_credentials(
        self, relay, session, mock_client, sink, test_db
    ):
        mock_client.authenticate.return_value = "fresh"
        mock_client.list_messages.side_effect = AuthExpiredError("401", 401)

        stats = await relay.tick()

        assert stats["errors"] == 1
        assert sink.deliveries == []
        assert mock_client.authenticate.call_count == 1
        assert "InvalidCredentialsError" in test_db.get_session_by_address("temp@x.test").last_error


class TestDelivery:
    """Delivery outcomes and what gets recorded as observed."""

    @pytest.mark.asyncio
    async def test_undeliverable_is_settled(self, test_db, mock_client, relay_config, session):
        sink = RecordingSink(result=DeliveryResult.UNDELIVERABLE)
        relay = RelayLoop(test_db, mock_client, sink, relay_config)
        mock_client.list_messages.return_value = summaries("m1")

        stats = await relay.tick()
        await relay.tick()

        assert stats["undeliverable"] == 1
        assert stats["notified"] == 0
        assert len(sink.deliveries) == 1
        assert test_db.get_observed_ids(session.id) == {"m1"}

    @pytest.mark.asyncio
    async def test_transport_failure_retried_next_tick(self, test_db, mock_client, relay_config, session):
        sink = FlakySink(failures=1)
        relay = RelayLoop(test_db, mock_client, sink, relay_config)
        mock_client.list_messages.return_value = summaries("m1")

        first = await relay.tick()

        assert first["notified"] == 0
        assert first["failed_deliveries"] == 1
        assert test_db.get_observed_ids(session.id) == set()

        second = await relay.tick()

        assert second["notified"] == 1
        assert sink.delivered == ["m1"]
        assert test_db.get_observed_ids(session.id) == {"m1"}

    @pytest.mark.asyncio
    async def test_delivery_timeout_leaves_message_unobserved(self, test_db, mock_client, relay_config, session):
        config = replace(relay_config, dispatch_timeout_seconds=0.05)
        relay = RelayLoop(test_db, mock_client, HangingSink(), config)
        mock_client.list_messages.return_value = summaries("m1")

        stats = await relay.tick()

        assert stats["notified"] == 0
        assert stats["errors"] == 0
        assert stats["failed_deliveries"] == 1
        assert test_db.get_observed_ids(session.id) == set()

    @pytest.mark.asyncio
    async def test_latest_mode_notifies_newest_only(self, test_db, mock_client, relay_config, session):
        sink = RecordingSink()
        relay = RelayLoop(test_db, mock_client, sink, replace(relay_config, notify_mode="latest"))
        mock_client.list_messages.return_value = summaries("m3", "m2", "m1")

        stats = await relay.tick()

        assert stats["notified"] == 1
        assert sink.message_ids == ["m3"]
        assert test_db.get_observed_ids(session.id) == {"m1", "m2", "m3"}

    @pytest.mark.asyncio
    async def test_observed_set_is_bounded(self, test_db, mock_client, relay_config, session):
        relay = RelayLoop(test_db, mock_client, RecordingSink(), replace(relay_config, max_observed_ids=2))
        mock_client.list_messages.return_value = summaries("m2", "m1")
        await relay.tick()

        mock_client.list_messages.return_value = summaries("m3")
        await relay.tick()

        assert test_db.get_observed_ids(session.id) == {"m2", "m3"}

    @pytest.mark.asyncio
    async def test_listed_messages_never_renotified_past_bound(self, test_db, mock_client, relay_config, session):
        sink = RecordingSink()
        relay = RelayLoop(test_db, mock_client, sink, replace(relay_config, max_observed_ids=2))
        mock_client.list_messages.return_value = summaries("m3", "m2", "m1")

        for _ in range(3):
            await relay.tick()

        assert sink.message_ids == ["m3", "m2", "m1"]
        assert test_db.get_observed_ids(session.id) == {"m1", "m2", "m3"}

    @pytest.mark.asyncio
    async def test_hanging_transport_does_not_repeat_delivered_notice(
        self, test_db, mock_client, relay_config, session
    ):
        delivered = RecordingSink()
        hanging = HangingSink()
        sink = CompositeSink([delivered, hanging], child_timeout_seconds=0.05)
        relay = RelayLoop(test_db, mock_client, sink, replace(relay_config, dispatch_timeout_seconds=1.0))
        mock_client.list_messages.return_value = summaries("m1")

        stats = await relay.tick()
        await relay.tick()
        await relay.tick()

        assert stats["notified"] == 1
        assert delivered.message_ids == ["m1"]
        assert test_db.get_observed_ids(session.id) == {"m1"}


class TestConcurrency:
    """In-flight guard and bounded polling."""

    @pytest.mark.asyncio
    async def test_session_in_flight_is_skipped(self, relay, session, mock_client, sink):
        started = threading.Event()
        release = threading.Event()

        def slow_list(token):
            started.set()
            release.wait(5)
            return summaries("m1")

        mock_client.list_messages.side_effect = slow_list

        first = asyncio.create_task(relay.tick())
        while not started.is_set():
            await asyncio.sleep(0.01)

        second = await relay.tick()
        release.set()
        first_stats = await first

        assert second["skipped"] == 1
        assert second["polled"] == 0
        assert first_stats["notified"] == 1
        assert mock_client.list_messages.call_count == 1
        assert sink.message_ids == ["m1"]

    @pytest.mark.asyncio
    async def test_run_forever_stops(self, relay, session, mock_client):
        mock_client.list_messages.return_value = []

        runner = asyncio.create_task(relay.run_forever(interval_seconds=1))
        await asyncio.sleep(0.1)
        await relay.stop(grace_seconds=5)
        await asyncio.wait_for(runner, timeout=5)

        assert relay.running is False
        assert mock_client.list_messages.call_count >= 1
