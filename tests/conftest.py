"""
Shared fixtures.
"""

from unittest.mock import Mock

import pytest

from mailrelay.core.config import RelayConfig
from mailrelay.core.database import DatabaseManager
from mailrelay.provider.client import MailProviderClient


@pytest.fixture
def test_db(tmp_path):
    """File-backed SQLite session store (shared safely across relay threads)."""
    db = DatabaseManager(f"sqlite:///{tmp_path / 'relay.db'}")
    db.create_tables()

    yield db

    db.drop_tables()
    db.engine.dispose()


@pytest.fixture
def mock_client():
    """Mail provider client with no behavior configured."""
    return Mock(spec=MailProviderClient)


@pytest.fixture
def relay_config():
    """Relay settings tuned for fast tests."""
    return RelayConfig(
        poll_interval_seconds=1,
        active_window_minutes=30,
        max_concurrent_polls=4,
        dispatch_timeout_seconds=1.0,
        notify_mode="all",
        max_observed_ids=500,
    )
