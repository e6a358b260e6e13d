"""
Unit tests for user-initiated mailbox operations.
"""

from datetime import timedelta

import pytest

from mailrelay.core.database import utcnow
from mailrelay.core.exceptions import AuthExpiredError, InvalidCredentialsError, SessionNotFoundError
from mailrelay.provider.models import MessageDetail
from mailrelay.services import MailboxService
from tests.factories import ProviderTestFactory


@pytest.fixture
def service(test_db, mock_client):
    return MailboxService(test_db, mock_client)


@pytest.fixture
def stale_session(test_db):
    record = test_db.create_session("42", "temp@x.test", "secret", "tok")
    test_db.touch_last_access(record.id, utcnow() - timedelta(hours=3))
    return record


class TestRegister:
    def test_register_authenticates_and_stores(self, service, mock_client, test_db):
        mock_client.authenticate.return_value = "tok-1"

        session = service.register("42", "Temp@X.test", "secret")

        assert session.mailbox_address == "temp@x.test"
        assert test_db.get_token("temp@x.test") == "tok-1"
        mock_client.create_account.assert_not_called()

    def test_register_can_create_account(self, service, mock_client):
        mock_client.authenticate.return_value = "tok-1"

        service.register("42", "temp@x.test", "secret", create_account=True)

        mock_client.create_account.assert_called_once_with("temp@x.test", "secret")

    def test_rejected_credentials_store_nothing(self, service, mock_client, test_db):
        mock_client.authenticate.side_effect = InvalidCredentialsError("bad", 401)

        with pytest.raises(InvalidCredentialsError):
            service.register("42", "temp@x.test", "wrong")

        assert test_db.get_session_by_address("temp@x.test") is None


class TestRecover:
    def test_recover_refreshes_token_and_reactivates(self, service, mock_client, test_db, stale_session):
        mock_client.authenticate.return_value = "tok-2"

        service.recover("temp@x.test")

        record = test_db.get_session_by_address("temp@x.test")
        assert record.auth_token == "tok-2"
        assert [s.id for s in test_db.get_active_sessions(timedelta(minutes=30))] == [record.id]

    def test_recover_for_another_user(self, service, mock_client, test_db, stale_session):
        mock_client.authenticate.return_value = "tok-2"

        session = service.recover("temp@x.test", user_id="99")

        assert session.user_id == "99"
        assert test_db.get_session_by_address("temp@x.test").user_id == "99"

    def test_recover_unknown_address(self, service):
        with pytest.raises(SessionNotFoundError):
            service.recover("nobody@x.test")


class TestInboxOperations:
    def test_check_inbox_marks_session_active(self, service, mock_client, test_db, stale_session):
        mock_client.list_messages.return_value = [ProviderTestFactory.create_summary("m1")]

        messages = service.check_inbox("temp@x.test")

        assert [m.id for m in messages] == ["m1"]
        assert len(test_db.get_active_sessions(timedelta(minutes=30))) == 1

    def test_check_inbox_refreshes_expired_token(self, service, mock_client, test_db, stale_session):
        mock_client.authenticate.return_value = "fresh"

        def list_messages(token):
            if token == "tok":
                raise AuthExpiredError("401", 401)
            return []

        mock_client.list_messages.side_effect = list_messages

        assert service.check_inbox("temp@x.test") == []
        assert test_db.get_token("temp@x.test") == "fresh"

    def test_read_message(self, service, mock_client, stale_session):
        mock_client.fetch_message.return_value = MessageDetail.from_api(
            ProviderTestFactory.create_message_detail("m1", text="Code: 777")
        )

        detail = service.read_message("temp@x.test", "m1")

        assert detail.body == "Code: 777"
        mock_client.fetch_message.assert_called_once_with("tok", "m1")

    def test_delete_message(self, service, mock_client, stale_session):
        mock_client.delete_message.return_value = True

        assert service.delete_message("temp@x.test", "m1") is True
        mock_client.delete_message.assert_called_once_with("tok", "m1")
