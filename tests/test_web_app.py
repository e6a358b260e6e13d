"""
Tests for the push server endpoints.
"""

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from mailrelay.dispatch.registry import ConnectionRegistry
from mailrelay.web.app import create_app


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def client(registry):
    return TestClient(create_app(registry))


class TestHealth:
    def test_health(self, client, registry):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["connections"] == 0
        assert data["service"] == "mailrelay"


class TestPushSocket:
    def test_register_acknowledged(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "register", "userId": 42})

            assert ws.receive_json() == {"type": "registered", "userId": "42"}
            assert registry.is_connected("42")

    def test_disconnect_unregisters(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "register", "userId": "42"})
            ws.receive_json()

        assert not registry.is_connected("42")

    def test_unregister_message(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "register", "userId": "42"})
            ws.receive_json()
            ws.send_json({"type": "unregister", "userId": "42"})
            # Round-trip a second registration so the unregister has been processed
            ws.send_json({"type": "register", "userId": "43"})
            ws.receive_json()

            assert not registry.is_connected("42")
            assert registry.is_connected("43")

    def test_unknown_messages_ignored(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            ws.send_json({"type": "register", "userId": "42"})

            assert ws.receive_json()["type"] == "registered"

    def test_binary_frame_closes_connection(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "register", "userId": "42"})
            ws.receive_json()
            ws.send_bytes(b"\x00\x01")

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1003
        assert not registry.is_connected("42")
