"""HTTP API tests through FastAPI's TestClient."""
from schoolchat.config import AppSettings, GatewaySecrets, Secrets, set_config

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def as_user(user_id):
    return {"X-User-Id": user_id}


def create_direct(client, caller, other):
    resp = client.post("/rooms", json={"kind": "direct", "participant_ids": [other]}, headers=as_user(caller))
    assert resp.status_code == 201
    return resp.json()


class TestHealth:
    def test_health(self, api_client):
        resp = api_client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "realtime": True}


class TestCallerIdentity:
    def test_missing_user_header(self, api_client):
        resp = api_client.get("/rooms")
        assert resp.status_code == 401

    def test_gateway_token_enforced_when_configured(self, api_client):
        set_config(AppSettings(secrets=Secrets(gateway=GatewaySecrets(shared_token="s3cret"))))
        assert api_client.get("/rooms", headers=as_user("alice")).status_code == 401
        resp = api_client.get("/rooms", headers={**as_user("alice"), "X-Gateway-Token": "s3cret"})
        assert resp.status_code == 200


class TestRooms:
    def test_create_direct_room_is_deduplicated(self, api_client):
        first = create_direct(api_client, "alice", "bob")
        second = create_direct(api_client, "bob", "alice")
        assert first["id"] == second["id"]
        assert first["kind"] == "direct"

    def test_invalid_direct_room(self, api_client):
        resp = api_client.post(
            "/rooms", json={"kind": "direct", "participant_ids": ["bob", "carol"]}, headers=as_user("alice"),
        )
        assert resp.status_code == 422
        assert resp.json()["type"] == "InvalidParticipants"

    def test_room_detail(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        resp = api_client.get(f"/rooms/{room['id']}", headers=as_user("bob"))
        assert resp.status_code == 200
        assert {p["user_id"] for p in resp.json()["participants"]} == {"alice", "bob"}

    def test_room_detail_for_outsider(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        resp = api_client.get(f"/rooms/{room['id']}", headers=as_user("mallory"))
        assert resp.status_code == 403
        assert resp.json() == {
            "error": f"User mallory is not a participant of room {room['id']}",
            "type": "NotAParticipant",
        }

    def test_unknown_room(self, api_client):
        resp = api_client.get("/rooms/999/messages", headers=as_user("alice"))
        assert resp.status_code == 404
        assert resp.json()["type"] == "RoomNotFound"

    def test_add_participants_and_disable(self, api_client):
        resp = api_client.post(
            "/rooms", json={"kind": "group", "participant_ids": ["bob"], "name": "Class 5B"}, headers=as_user("alice"),
        )
        room_id = resp.json()["id"]
        added = api_client.post(
            f"/rooms/{room_id}/participants", json={"user_ids": ["carol"]}, headers=as_user("alice"),
        )
        assert [p["user_id"] for p in added.json()] == ["carol"]
        assert api_client.post(f"/rooms/{room_id}/disable", headers=as_user("bob")).status_code == 403
        disabled = api_client.post(f"/rooms/{room_id}/disable", headers=as_user("alice"))
        assert disabled.json()["is_disabled"] is True


class TestMessages:
    def test_send_and_list(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        sent = api_client.post(f"/rooms/{room['id']}/messages", json={"content": "hi"}, headers=as_user("alice"))
        assert sent.status_code == 201
        page = api_client.get(f"/rooms/{room['id']}/messages", headers=as_user("bob")).json()
        assert [m["content"] for m in page["messages"]] == ["hi"]
        assert page["has_more"] is False

    def test_empty_message(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        resp = api_client.post(f"/rooms/{room['id']}/messages", json={"content": "  "}, headers=as_user("alice"))
        assert resp.status_code == 422
        assert resp.json()["type"] == "EmptyMessage"

    def test_pagination(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        ids = [
            api_client.post(f"/rooms/{room['id']}/messages", json={"content": f"m{i}"}, headers=as_user("alice"))
            .json()["id"]
            for i in range(4)
        ]
        page = api_client.get(
            f"/rooms/{room['id']}/messages", params={"before": ids[2], "limit": 1}, headers=as_user("bob"),
        ).json()
        assert [m["id"] for m in page["messages"]] == [ids[1]]
        assert page["has_more"] is True

    def test_edit_and_delete(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        message = api_client.post(
            f"/rooms/{room['id']}/messages", json={"content": "helo"}, headers=as_user("alice"),
        ).json()
        assert api_client.patch(
            f"/messages/{message['id']}", json={"content": "nope"}, headers=as_user("bob"),
        ).status_code == 403
        edited = api_client.patch(f"/messages/{message['id']}", json={"content": "hello"}, headers=as_user("alice"))
        assert edited.json()["content"] == "hello"
        deleted = api_client.delete(f"/messages/{message['id']}", headers=as_user("alice"))
        assert deleted.json()["is_deleted"] is True
        page = api_client.get(f"/rooms/{room['id']}/messages", headers=as_user("bob")).json()
        assert page["messages"] == []


class TestReadState:
    def test_mark_read_and_unread_counts(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        for text in ("one", "two"):
            api_client.post(f"/rooms/{room['id']}/messages", json={"content": text}, headers=as_user("alice"))
        unread = api_client.get("/unread", headers=as_user("bob")).json()
        assert unread == {"counts": {str(room["id"]): 2}, "total": 2}

        resp = api_client.post(f"/rooms/{room['id']}/read", json={"upto_message_id": 10_000}, headers=as_user("bob"))
        body = resp.json()
        assert body["unread_count"] == 0
        assert body["last_read_message_id"] == 2
        assert api_client.get("/unread", headers=as_user("bob")).json()["total"] == 0

    def test_chat_list_filters(self, api_client, profiles):
        create_direct(api_client, "alice", "bob")
        create_direct(api_client, "alice", "carol")
        rooms = api_client.get("/rooms", headers=as_user("alice")).json()
        assert {r["display_name"] for r in rooms} == {"Bob Parent", "Carol Student"}
        found = api_client.get("/rooms", params={"search": "carol"}, headers=as_user("alice")).json()
        assert [r["display_name"] for r in found] == ["Carol Student"]
        assert api_client.get("/rooms", params={"unread_only": True}, headers=as_user("alice")).json() == []


class TestAttachments:
    def test_upload_send_and_download(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        resp = api_client.post(
            f"/attachments/{room['id']}",
            files={"file": ("photo.png", PNG, "image/png")},
            headers=as_user("alice"),
        )
        assert resp.status_code == 201
        body = resp.json()
        key = body["attachment"]["storage_key"]
        assert body["url"] == f"http://testserver/attachments/{key}"

        message = api_client.post(
            f"/rooms/{room['id']}/messages", json={"attachment_key": key}, headers=as_user("alice"),
        ).json()
        assert message["type"] == "image"
        assert message["attachment_url"] == body["url"]

        download = api_client.get(f"/attachments/{key}")
        assert download.status_code == 200
        assert download.content == PNG
        assert download.headers["content-type"] == "image/png"

    def test_oversized_upload(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        resp = api_client.post(
            f"/attachments/{room['id']}",
            files={"file": ("big.png", b"x" * 4096, "image/png")},
            headers=as_user("alice"),
        )
        assert resp.status_code == 413
        assert resp.json()["type"] == "PayloadTooLarge"

    def test_unsupported_upload(self, api_client):
        room = create_direct(api_client, "alice", "bob")
        resp = api_client.post(
            f"/attachments/{room['id']}",
            files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
            headers=as_user("alice"),
        )
        assert resp.status_code == 415

    def test_missing_download(self, api_client):
        assert api_client.get("/attachments/1/missing.png").status_code == 404


class TestUsers:
    def test_upsert_and_get(self, api_client):
        resp = api_client.put("/users/bob", json={"display_name": "Bob Parent", "role": "parent"})
        assert resp.status_code == 200
        profile = api_client.get("/users/bob").json()
        assert profile["display_name"] == "Bob Parent"
        assert profile["role"] == "parent"

    def test_unknown_user(self, api_client):
        assert api_client.get("/users/nobody").status_code == 404
