from datetime import datetime, timedelta

import pytest

from models import db, ChatNotification, Conversation, Message

BASE = "/api/team-chat"


@pytest.fixture
def chat(org, login):
    alice, bob = login("alice@example.com"), login("bob@example.com")
    resp = alice.post(f"{BASE}/conversations", json={"participant_id": org["bob"]})
    assert resp.status_code == 201
    return {"as_alice": alice, "as_bob": bob, "conversation": resp.get_json()["data"]["id"], **org}


def _send(client, conversation_id, content="hello", **extra):
    return client.post(f"{BASE}/conversations/{conversation_id}/messages", json={"content": content, **extra})


# ── CONVERSATIONS ────────────────────────────────────────────────────────
def test_conversation_is_get_or_create(chat):
    data = chat["as_bob"].post(f"{BASE}/conversations", json={"participant_id": chat["alice"]})
    assert data.status_code == 200
    body = data.get_json()["data"]
    assert body["created"] is False
    assert body["id"] == chat["conversation"]
    assert body["participant_one_id"] < body["participant_two_id"]
    assert body["vanishing_mode"] is True
    assert body["vanishing_duration_hours"] == 24


def test_conversation_rules(chat, make_team, make_user, login):
    self_chat = chat["as_alice"].post(f"{BASE}/conversations", json={"participant_id": chat["alice"]})
    assert self_chat.status_code == 400
    assert self_chat.get_json()["message"] == "Cannot create a conversation with yourself"

    other_team = make_team("Other")
    outsider = make_user("eve@example.com", team_id=other_team)
    resp = chat["as_alice"].post(f"{BASE}/conversations", json={"participant_id": outsider})
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Can only chat with team members"

    loner = make_user("lone@example.com")
    assert login("lone@example.com").post(f"{BASE}/conversations", json={"participant_id": chat["alice"]}).status_code == 403
    assert chat["as_alice"].post(f"{BASE}/conversations", json={"participant_id": loner}).status_code == 403

    assert chat["as_alice"].post(f"{BASE}/conversations", json={"participant_id": "x"}).status_code == 400


def test_array_body_is_rejected(chat):
    resp = chat["as_alice"].post(f"{BASE}/conversations", json=[chat["bob"]])
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False
    msg = chat["as_alice"].post(f"{BASE}/conversations/{chat['conversation']}/messages", json=["hi"])
    assert msg.get_json()["message"] == "Message content cannot be empty"
    typing = chat["as_alice"].post(f"{BASE}/conversations/{chat['conversation']}/typing", json=[True])
    assert typing.status_code == 400


def test_non_participant_cannot_see_conversation(chat, make_user, login):
    make_user("carol@example.com", team_id=chat["team"])
    carol = login("carol@example.com")
    resp = carol.get(f"{BASE}/conversations/{chat['conversation']}")
    assert resp.status_code == 404
    assert resp.get_json()["message"] == "Conversation not found"
    assert carol.get(f"{BASE}/conversations/{chat['conversation']}/messages").status_code == 404


def test_conversation_list_details_and_order(chat, make_user, login):
    carol = make_user("carol@example.com", name="Carol", team_id=chat["team"])
    second = chat["as_alice"].post(f"{BASE}/conversations", json={"participant_id": carol}).get_json()["data"]["id"]
    _send(chat["as_bob"], chat["conversation"], "first from bob")

    convs = chat["as_alice"].get(f"{BASE}/conversations").get_json()["data"]
    assert [c["id"] for c in convs] == [chat["conversation"], second]
    assert convs[0]["other_participant_name"] == "Bob"
    assert convs[0]["unread_count"] == 1
    assert convs[0]["last_message_preview"] == "first from bob"
    assert convs[1]["last_message_at"] is None


# ── MESSAGES ─────────────────────────────────────────────────────────────
def test_send_message_validation(chat):
    cid = chat["conversation"]
    empty = _send(chat["as_alice"], cid, "   ")
    assert empty.get_json()["message"] == "Message content cannot be empty"
    long = _send(chat["as_alice"], cid, "x" * 5001)
    assert long.get_json()["message"] == "Message content cannot exceed 5000 characters"
    assert _send(chat["as_alice"], cid, "x" * 5000).status_code == 201
    assert _send(chat["as_alice"], 999, "hi").status_code == 404


def test_send_message_sets_expiry_notification_and_event(chat, listen, app):
    inbox = listen(chat["bob"])
    resp = _send(chat["as_alice"], chat["conversation"], "  hi bob  ")
    assert resp.status_code == 201
    msg = resp.get_json()["data"]
    assert msg["content"] == "hi bob"
    assert msg["is_vanishing"] is True
    assert msg["sender_name"] == "Alice"

    expires = datetime.fromisoformat(msg["expires_at"])
    created = datetime.fromisoformat(msg["created_at"])
    assert expires - created == timedelta(hours=24)

    events = inbox()
    assert events == [("new_message", {"conversation_id": chat["conversation"], "message": msg})]

    with app.app_context():
        assert ChatNotification.query.filter_by(user_id=chat["bob"], message_id=msg["id"]).count() == 1
        assert db.session.get(Conversation, chat["conversation"]).last_message_at is not None


def test_non_vanishing_messages_do_not_expire(chat):
    chat["as_alice"].put(f"{BASE}/conversations/{chat['conversation']}/vanishing", json={"vanishing_mode": False})
    msg = _send(chat["as_alice"], chat["conversation"]).get_json()["data"]
    assert msg["is_vanishing"] is False
    assert msg["expires_at"] is None


def test_reply_must_be_in_same_conversation(chat, make_user, login):
    first = _send(chat["as_alice"], chat["conversation"], "question").get_json()["data"]
    reply = _send(chat["as_bob"], chat["conversation"], "answer", reply_to_message_id=first["id"])
    assert reply.status_code == 201
    assert reply.get_json()["data"]["reply_to"]["content"] == "question"

    carol = make_user("carol@example.com", team_id=chat["team"])
    other = chat["as_alice"].post(f"{BASE}/conversations", json={"participant_id": carol}).get_json()["data"]["id"]
    bad = _send(chat["as_alice"], other, "nope", reply_to_message_id=first["id"])
    assert bad.status_code == 400
    assert bad.get_json()["message"] == "Invalid reply message"


def test_message_pagination_oldest_first(chat):
    ids = [_send(chat["as_alice"], chat["conversation"], f"m{i}").get_json()["data"]["id"] for i in range(5)]
    url = f"{BASE}/conversations/{chat['conversation']}/messages"

    page = chat["as_bob"].get(f"{url}?limit=2").get_json()["data"]
    assert [m["id"] for m in page["messages"]] == ids[3:]
    assert page["has_more"] is True
    assert page["next_cursor"] == ids[3]

    older = chat["as_bob"].get(f"{url}?limit=2&before={page['next_cursor']}").get_json()["data"]
    assert [m["id"] for m in older["messages"]] == ids[1:3]

    last = chat["as_bob"].get(f"{url}?limit=2&before={ids[1]}").get_json()["data"]
    assert [m["id"] for m in last["messages"]] == ids[:1]
    assert last["has_more"] is False
    assert last["next_cursor"] is None


def test_expired_messages_are_hidden(chat, app):
    msg_id = _send(chat["as_alice"], chat["conversation"], "soon gone").get_json()["data"]["id"]
    _send(chat["as_alice"], chat["conversation"], "still here")
    with app.app_context():
        db.session.get(Message, msg_id).expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()
    messages = chat["as_bob"].get(f"{BASE}/conversations/{chat['conversation']}/messages").get_json()["data"]["messages"]
    assert [m["content"] for m in messages] == ["still here"]


def test_delete_message(chat, listen, app):
    msg_id = _send(chat["as_alice"], chat["conversation"]).get_json()["data"]["id"]
    inbox = listen(chat["bob"])

    forbidden = chat["as_bob"].delete(f"{BASE}/messages/{msg_id}")
    assert forbidden.status_code == 403
    assert forbidden.get_json()["message"] == "You can only delete your own messages"
    assert chat["as_alice"].delete(f"{BASE}/messages/999").status_code == 404

    assert chat["as_alice"].delete(f"{BASE}/messages/{msg_id}").status_code == 200
    assert inbox() == [("message_deleted", {"conversation_id": chat["conversation"], "message_id": msg_id})]
    with app.app_context():
        assert ChatNotification.query.count() == 0


# ── ACTIONS ──────────────────────────────────────────────────────────────
def test_vanishing_mode_update(chat, listen):
    url = f"{BASE}/conversations/{chat['conversation']}/vanishing"
    for hours in (0, 169, "12"):
        resp = chat["as_alice"].put(url, json={"vanishing_mode": True, "vanishing_duration_hours": hours})
        assert resp.status_code == 400
    assert chat["as_alice"].put(url, json={"vanishing_mode": "yes"}).status_code == 400

    alice_inbox, bob_inbox = listen(chat["alice"]), listen(chat["bob"])
    resp = chat["as_alice"].put(url, json={"vanishing_mode": True, "vanishing_duration_hours": 2})
    assert resp.get_json()["data"]["vanishing_duration_hours"] == 2
    expected = ("vanishing_mode_changed", {
        "conversation_id": chat["conversation"], "vanishing_mode": True,
        "vanishing_duration_hours": 2, "changed_by_id": chat["alice"],
    })
    assert alice_inbox() == [expected]
    assert bob_inbox() == [expected]


def test_mark_read_up_to_message(chat, listen, app):
    ids = [_send(chat["as_alice"], chat["conversation"], f"m{i}").get_json()["data"]["id"] for i in range(3)]
    inbox = listen(chat["alice"])

    resp = chat["as_bob"].post(f"{BASE}/conversations/{chat['conversation']}/read", json={"up_to_message_id": ids[1]})
    assert resp.get_json()["data"] == {"marked_count": 2}
    assert inbox() == [("message_read", {
        "conversation_id": chat["conversation"], "reader_id": chat["bob"], "read_up_to_message_id": ids[1],
    })]

    with app.app_context():
        read = {m.id: m.read_at for m in Message.query.all()}
    assert read[ids[0]] is not None and read[ids[1]] is not None
    assert read[ids[2]] is None

    unread = chat["as_bob"].get(f"{BASE}/notifications/unread").get_json()["data"]
    assert unread["total_unread"] == 1
    assert unread["conversations"][0]["other_participant_name"] == "Alice"

    again = chat["as_bob"].post(f"{BASE}/conversations/{chat['conversation']}/read", json={"up_to_message_id": ids[2]})
    assert again.get_json()["data"]["marked_count"] == 1
    assert chat["as_bob"].post(f"{BASE}/conversations/{chat['conversation']}/read", json={}).status_code == 400


def test_typing_indicator(chat, listen):
    inbox = listen(chat["bob"])
    url = f"{BASE}/conversations/{chat['conversation']}/typing"
    assert chat["as_alice"].post(url, json={"is_typing": "maybe"}).status_code == 400
    assert chat["as_alice"].post(url, json={"is_typing": True}).status_code == 200
    assert inbox() == [("typing", {
        "conversation_id": chat["conversation"], "user_id": chat["alice"],
        "user_name": "Alice", "is_typing": True,
    })]


def test_members_show_presence(chat, listen):
    listen(chat["bob"])
    members = chat["as_alice"].get(f"{BASE}/members").get_json()["data"]
    by_name = {m["name"]: m["is_online"] for m in members}
    assert by_name == {"Ada Admin": False, "Bob": True}


def test_events_endpoint_streams_connected_first(chat, app):
    resp = chat["as_alice"].get(f"{BASE}/events", buffered=False)
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"
    assert resp.headers["Cache-Control"] == "no-cache"
    assert "Connection" not in resp.headers
    first = next(iter(resp.response))
    if isinstance(first, bytes):
        first = first.decode()
    assert first == f'event: connected\ndata: {{"user_id": {chat["alice"]}}}\n\n'
    resp.close()
