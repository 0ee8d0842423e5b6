"""
Tests for the /ws realtime channel.

Tests cover:
- Connection identity
- ping/pong and malformed frames
- Joining conversations and typing indicators
- Sending over the socket and receiving pushes from HTTP sends
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatcore.main import app
from chatcore.storage import Base, engine
from tests.helpers import seed_users


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        seed_users("alice", "bob", "carol")
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def direct_id(client):
    response = client.post("/conversations", json={"recipient_id": "bob"}, headers={"X-User-ID": "alice"})
    return response.json()["conversation"]["id"]


class TestConnection:
    def test_identity_required(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws"):
                pass

    def test_ping(self, client):
        with client.websocket_connect("/ws?user_id=alice") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong", "data": {}}

    def test_identity_from_header(self, client):
        with client.websocket_connect("/ws", headers={"X-User-ID": "alice"}) as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_malformed_frame(self, client):
        with client.websocket_connect("/ws?user_id=alice") as ws:
            ws.send_text("not json")
            frame = ws.receive_json()

            assert frame["type"] == "error"
            assert frame["data"]["status"] == 400

            # The connection survives a bad frame
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_unknown_event(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=alice") as ws:
            ws.send_json({"type": "dance", "data": {"conversation_id": direct_id}})
            assert ws.receive_json()["type"] == "error"

    def test_non_string_conversation_id(self, client):
        with client.websocket_connect("/ws?user_id=alice") as ws:
            ws.send_json({"type": "join_conversation", "data": {"conversation_id": {"id": "c1"}}})
            frame = ws.receive_json()

            assert frame["type"] == "error"
            assert frame["data"]["status"] == 400

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_unexpected_error_keeps_connection(self, client, direct_id, monkeypatch):
        def explode(conversation_id, connection):
            raise RuntimeError("registry unavailable")

        monkeypatch.setattr(app.state.gateway, "join_conversation", explode)

        with client.websocket_connect("/ws?user_id=alice") as ws:
            ws.send_json({"type": "join_conversation", "data": {"conversation_id": direct_id}})
            assert ws.receive_json() == {"type": "error", "data": {"message": "Server error", "status": 500}}

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


class TestConversationEvents:
    def test_join_requires_participation(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=carol") as ws:
            ws.send_json({"type": "join_conversation", "data": {"conversation_id": direct_id}})
            frame = ws.receive_json()

            assert frame["type"] == "error"
            assert frame["data"]["status"] == 403

    def test_join_and_leave(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=alice") as ws:
            ws.send_json({"type": "join_conversation", "data": {"conversation_id": direct_id}})
            assert ws.receive_json() == {"type": "joined", "data": {"conversation_id": direct_id}}

            ws.send_json({"type": "leave_conversation", "data": {"conversation_id": direct_id}})
            assert ws.receive_json() == {"type": "left", "data": {"conversation_id": direct_id}}

    def test_typing_reaches_other_participant(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=bob") as bob:
            bob.send_json({"type": "join_conversation", "data": {"conversation_id": direct_id}})
            assert bob.receive_json()["type"] == "joined"

            with client.websocket_connect("/ws?user_id=alice") as alice:
                alice.send_json({"type": "typing_start", "data": {"conversation_id": direct_id}})

                frame = bob.receive_json()
                assert frame == {
                    "type": "typing_start",
                    "data": {"conversation_id": direct_id, "user_id": "alice"},
                }

    def test_typing_skips_participant_outside_the_room(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=bob") as bob:
            with client.websocket_connect("/ws?user_id=alice") as alice:
                alice.send_json({"type": "typing_start", "data": {"conversation_id": direct_id}})
                alice.send_json({"type": "send_message", "data": {"conversation_id": direct_id, "text": "hi"}})
                assert alice.receive_json()["type"] == "message_sent"

                # The first frame bob sees is the message, not the typing indicator
                assert bob.receive_json()["type"] == "receive_message"

    def test_send_over_socket(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=bob") as bob:
            with client.websocket_connect("/ws?user_id=alice") as alice:
                alice.send_json({
                    "type": "send_message",
                    "data": {"conversation_id": direct_id, "text": "hi bob"},
                })

                sent = alice.receive_json()
                assert sent["type"] == "message_sent"
                assert sent["data"]["content"]["text"] == "hi bob"

                received = bob.receive_json()
                assert received["type"] == "receive_message"
                assert received["data"]["id"] == sent["data"]["id"]

    def test_http_send_is_pushed(self, client, direct_id):
        with client.websocket_connect("/ws?user_id=bob") as bob:
            response = client.post(
                f"/conversations/{direct_id}/messages",
                json={"text": "@bob hello"},
                headers={"X-User-ID": "alice"},
            )
            assert response.status_code == 201

            frame = bob.receive_json()
            assert frame["type"] == "receive_message"
            assert frame["data"]["id"] == response.json()["data"]["id"]
            assert frame["data"]["mentioned"] is True
