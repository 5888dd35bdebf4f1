import pytest
from starlette.websockets import WebSocketDisconnect

from marketplace.auth import issue_session
from marketplace.database import new_session
from marketplace.notifications import hub, notify


def test_message_unread_count_and_read_on_open(client, buyer, seller, factory):
    buyer_user, buyer_headers = buyer
    seller_user, seller_headers = seller

    resp = client.post("/api/messages", headers=buyer_headers, json={
        "recipient_id": seller_user.id, "subject": "Delivery time", "content": "Can you pack it by noon?",
    })
    assert resp.status_code == 201
    message = resp.json()
    assert message["is_read"] is False

    assert client.get("/api/messages/unread/count", headers=seller_headers).json() == {"count": 1}
    assert client.get("/api/messages/unread/count", headers=buyer_headers).json() == {"count": 0}

    # The sender opening it does not mark it read
    client.get(f"/api/messages/{message['id']}", headers=buyer_headers)
    assert client.get("/api/messages/unread/count", headers=seller_headers).json() == {"count": 1}

    opened = client.get(f"/api/messages/{message['id']}", headers=seller_headers).json()
    assert opened["is_read"] is True
    assert client.get("/api/messages/unread/count", headers=seller_headers).json() == {"count": 0}

    stranger = factory.headers(factory.user("buyer"))
    assert client.get(f"/api/messages/{message['id']}", headers=stranger).status_code == 404


def test_message_to_unknown_user_is_404(client, buyer):
    _, buyer_headers = buyer
    resp = client.post("/api/messages", headers=buyer_headers, json={
        "recipient_id": 9999, "subject": "Hi", "content": "Anyone there?",
    })
    assert resp.status_code == 404


def test_messages_filter_by_order(client, buyer, seller, ready_order):
    seller_user, seller_headers = seller
    _, buyer_headers = buyer
    order = ready_order("grocery")

    client.post("/api/messages", headers=buyer_headers, json={
        "recipient_id": seller_user.id, "subject": "About my order", "content": "Extra bag please",
        "order_kind": "grocery", "order_id": order["id"],
    })
    client.post("/api/messages", headers=buyer_headers, json={
        "recipient_id": seller_user.id, "subject": "General", "content": "Do you sell beans?",
    })

    about_order = client.get("/api/messages", headers=seller_headers,
                             params={"order_kind": "grocery", "order_id": order["id"]}).json()
    assert [m["subject"] for m in about_order] == ["About my order"]
    assert len(client.get("/api/messages", headers=seller_headers).json()) == 2


def test_order_events_create_notifications(client, buyer, seller, ready_order):
    _, buyer_headers = buyer
    _, seller_headers = seller
    ready_order("grocery")

    seller_notes = client.get("/api/notifications", headers=seller_headers).json()
    assert "new_order" in {n["type"] for n in seller_notes}

    buyer_notes = client.get("/api/notifications", headers=buyer_headers, params={"unread_only": True}).json()
    assert len(buyer_notes) == 2  # processing, ready_for_pickup
    assert client.get("/api/notifications/unread/count", headers=buyer_headers).json() == {"count": 2}

    resp = client.put(f"/api/notifications/{buyer_notes[0]['id']}/read", headers=buyer_headers)
    assert resp.status_code == 200
    assert client.get("/api/notifications/unread/count", headers=buyer_headers).json() == {"count": 1}

    # Someone else's notification is invisible
    assert client.put(f"/api/notifications/{buyer_notes[1]['id']}/read", headers=seller_headers).status_code == 404


def test_notifications_are_pushed_over_websocket(client, buyer, seller):
    buyer_user, buyer_headers = buyer
    seller_user, _ = seller
    token, _ = issue_session(seller_user)

    with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
        client.post("/api/messages", headers=buyer_headers, json={
            "recipient_id": seller_user.id, "subject": "Ping", "content": "Are you open?",
        })
        pushed = ws.receive_json()

    assert pushed["type"] == "message"
    assert pushed["message"] == "Ping"
    assert pushed["title"] == f"New message from {buyer_user.name}"


def test_websocket_refuses_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/notifications?token=not-a-token"):
            pass


def test_pushes_wait_for_the_commit(monkeypatch, factory):
    user = factory.user("buyer")
    sent = []
    monkeypatch.setattr(hub, "publish", lambda user_id, payload: sent.append((user_id, payload["title"])))

    with new_session() as session:
        notify(session, user.id, "order_status", "Rolled back", "never stored")
        session.rollback()

    with new_session() as session:
        notify(session, user.id, "order_status", "Abandoned", "request failed before commit")

    with new_session() as session:
        notify(session, user.id, "order_status", "Stored", "committed")
        assert sent == []
        session.commit()

    assert sent == [(user.id, "Stored")]
