"""WebSocket transport tests (/ws/chat)."""
import pytest
from starlette.websockets import WebSocketDisconnect

from schoolchat.config import AppSettings, GatewaySecrets, Secrets, set_config
from schoolchat.realtime.connections import manager


def as_user(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def room_id(api_client):
    resp = api_client.post("/rooms", json={"kind": "direct", "participant_ids": ["bob"]}, headers=as_user("alice"))
    return resp.json()["id"]


class TestConnect:
    def test_connected_frame_and_ping(self, api_client):
        with api_client.websocket_connect("/ws/chat?user_id=bob") as ws:
            assert ws.receive_json() == {"type": "connected", "user_id": "bob"}
            assert manager.connection_count("bob") == 1
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_bad_gateway_token_is_rejected(self, api_client):
        set_config(AppSettings(secrets=Secrets(gateway=GatewaySecrets(shared_token="s3cret"))))
        with pytest.raises(WebSocketDisconnect):
            with api_client.websocket_connect("/ws/chat?user_id=bob&token=wrong") as ws:
                ws.receive_json()

    def test_invalid_frames_keep_socket_open(self, api_client):
        with api_client.websocket_connect("/ws/chat?user_id=bob") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "subscribe"})
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


class TestRoomEvents:
    def test_subscribe_requires_participant(self, api_client, room_id):
        with api_client.websocket_connect("/ws/chat?user_id=mallory") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "room_id": room_id})
            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert frame["error_type"] == "NotAParticipant"

    def test_message_reaches_subscribed_socket(self, api_client, room_id):
        with api_client.websocket_connect("/ws/chat?user_id=bob") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "room_id": room_id})
            assert ws.receive_json() == {"type": "subscribed", "room_id": room_id}

            api_client.post(f"/rooms/{room_id}/messages", json={"content": "hi"}, headers=as_user("alice"))

            created = ws.receive_json()
            assert created["event"] == "message_created"
            assert created["topic"] == f"room:{room_id}"
            assert created["data"]["message"]["content"] == "hi"

            updated = ws.receive_json()
            assert updated["event"] == "room_updated"
            assert updated["topic"] == "user:bob:rooms"
            assert updated["data"]["unread_count"] == 1

    def test_read_frame_acknowledged(self, api_client, room_id):
        sent = api_client.post(f"/rooms/{room_id}/messages", json={"content": "hi"}, headers=as_user("alice"))
        message_id = sent.json()["id"]
        with api_client.websocket_connect("/ws/chat?user_id=bob") as ws:
            ws.receive_json()
            ws.send_json({"type": "read", "room_id": room_id, "message_id": message_id})
            # read_updated on the user topic arrives before the ack
            event = ws.receive_json()
            assert event["event"] == "read_updated"
            assert event["data"]["unread_count"] == 0
            ack = ws.receive_json()
            assert ack == {"type": "read_ack", "room_id": room_id, "last_read_message_id": message_id}

    def test_typing_forwarded_to_room(self, api_client, room_id):
        with api_client.websocket_connect("/ws/chat?user_id=bob") as bob:
            bob.receive_json()
            bob.send_json({"type": "subscribe", "room_id": room_id})
            bob.receive_json()
            with api_client.websocket_connect("/ws/chat?user_id=alice") as alice:
                alice.receive_json()
                alice.send_json({"type": "typing", "room_id": room_id, "is_typing": True})
                frame = bob.receive_json()
                assert frame["event"] == "typing"
                assert frame["data"] == {"room_id": room_id, "user_id": "alice", "is_typing": True}
