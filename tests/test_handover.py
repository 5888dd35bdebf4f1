from datetime import timedelta

import pytest
from sqlalchemy import update

from marketplace.config import MAX_CODE_ATTEMPTS
from marketplace.database import new_session
from marketplace.db_models import ConfirmationCode, utcnow
from marketplace.errors import InvalidCode, CodeLocked
from marketplace.handover import issue_code, consume_code, active_code


def _issue(kind="grocery", order_id=1, code_type="seller_pickup", holder=None):
    with new_session() as session:
        code = issue_code(session, kind, order_id, code_type, holder)
        session.commit()
        return code


def _consume(submitted, kind="grocery", order_id=1, code_type="seller_pickup"):
    # One session per attempt, like one request per attempt
    with new_session() as session:
        code = consume_code(session, kind, order_id, code_type, submitted)
        session.commit()
        return code


# -----------------------------------------------------------------
# Code rules
# -----------------------------------------------------------------

def test_codes_are_six_digits_and_expire_per_type():
    pickup = _issue(code_type="seller_pickup")
    collection = _issue(code_type="buyer_collection")

    assert len(pickup.code_value) == 6 and pickup.code_value.isdigit()
    assert timedelta(minutes=29) < pickup.expires_at - utcnow() <= timedelta(minutes=30)
    assert collection.expires_at - utcnow() > timedelta(hours=71)


def test_code_cannot_be_replayed():
    code = _issue()
    used = _consume(code.code_value)
    assert used.status == "used"
    assert used.used_at is not None

    with pytest.raises(InvalidCode):
        _consume(code.code_value)


def test_reissuing_retires_the_previous_code():
    first = _issue()
    second = _issue()
    with new_session() as session:
        assert active_code(session, "grocery", 1, "seller_pickup").id == second.id

    if first.code_value != second.code_value:
        with pytest.raises(InvalidCode):
            _consume(first.code_value)
    _consume(second.code_value)


def test_codes_are_scoped_to_order_and_type():
    code = _issue(order_id=1)
    with pytest.raises(InvalidCode):
        _consume(code.code_value, order_id=2)
    with pytest.raises(InvalidCode):
        _consume(code.code_value, code_type="buyer_delivery")


def test_wrong_attempts_lock_the_code():
    code = _issue()
    wrong = "000000" if code.code_value != "000000" else "111111"

    for _ in range(MAX_CODE_ATTEMPTS):
        with pytest.raises(InvalidCode):
            _consume(wrong)

    # Even the right code is refused now
    with pytest.raises(CodeLocked):
        _consume(code.code_value)
    with new_session() as session:
        assert session.get(ConfirmationCode, code.id).status == "locked"


def test_expired_code_is_refused():
    code = _issue()
    with new_session() as session:
        session.exec(
            update(ConfirmationCode)
            .where(ConfirmationCode.id == code.id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        session.commit()

    with pytest.raises(InvalidCode):
        _consume(code.code_value)
    with new_session() as session:
        assert session.get(ConfirmationCode, code.id).status == "expired"

# -----------------------------------------------------------------
# Who sees which code
# -----------------------------------------------------------------

def _picked_up_grocery(client, factory, ready_order, seller):
    _, seller_headers = seller
    order = ready_order("grocery")
    user, agent = factory.agent("fast_delivery")
    headers = factory.headers(user, agent)

    client.post(f"/api/agent/orders/grocery/{order['id']}/accept", headers=headers)
    code = client.post(f"/api/agent/orders/grocery/{order['id']}/pickup-code", headers=headers).json()
    assert code["code_type"] == "seller_pickup"

    resp = client.post(f"/api/seller/orders/grocery/{order['id']}/verify-pickup", headers=seller_headers,
                       json={"code": code["code"]})
    assert resp.status_code == 200
    assert resp.json()["status"] == "picked_up"
    return order, headers


def test_seller_rejects_wrong_pickup_code(client, factory, ready_order, seller):
    _, seller_headers = seller
    order = ready_order("grocery")
    user, agent = factory.agent("fast_delivery")
    headers = factory.headers(user, agent)
    client.post(f"/api/agent/orders/grocery/{order['id']}/accept", headers=headers)
    code = client.post(f"/api/agent/orders/grocery/{order['id']}/pickup-code", headers=headers).json()["code"]
    wrong = "000000" if code != "000000" else "111111"

    resp = client.post(f"/api/seller/orders/grocery/{order['id']}/verify-pickup", headers=seller_headers,
                       json={"code": wrong})
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_code"

    order_now = client.get(f"/api/orders/grocery/{order['id']}", headers=seller_headers).json()["order"]
    assert order_now["status"] == "assigned"


def test_delivery_code_reaches_only_the_buyer(client, factory, ready_order, seller, buyer):
    _, buyer_headers = buyer
    order, agent_headers = _picked_up_grocery(client, factory, ready_order, seller)

    resp = client.post(f"/api/agent/orders/grocery/{order['id']}/delivery-code", headers=agent_headers)
    assert resp.status_code == 200
    assert resp.json()["code"] is None
    assert client.get("/api/agent/codes", headers=agent_headers).json() == []

    held = client.get(f"/api/buyer/orders/grocery/{order['id']}/code", headers=buyer_headers).json()
    assert held["code_type"] == "buyer_delivery"
    assert len(held["code_value"]) == 6

    resp = client.post(f"/api/agent/orders/grocery/{order['id']}/confirm-delivery", headers=agent_headers,
                       json={"code": held["code_value"]})
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"

    # Burned: the buyer no longer has an active code
    assert client.get(f"/api/buyer/orders/grocery/{order['id']}/code", headers=buyer_headers).status_code == 404


def test_locked_delivery_code_returns_429(client, factory, ready_order, seller, buyer):
    order, agent_headers = _picked_up_grocery(client, factory, ready_order, seller)
    client.post(f"/api/agent/orders/grocery/{order['id']}/delivery-code", headers=agent_headers)
    _, buyer_headers = buyer
    real = client.get(f"/api/buyer/orders/grocery/{order['id']}/code", headers=buyer_headers).json()["code_value"]
    wrong = "000000" if real != "000000" else "111111"

    url = f"/api/agent/orders/grocery/{order['id']}/confirm-delivery"
    for _ in range(MAX_CODE_ATTEMPTS):
        assert client.post(url, headers=agent_headers, json={"code": wrong}).status_code == 400

    resp = client.post(url, headers=agent_headers, json={"code": real})
    assert resp.status_code == 429
    assert resp.json()["code"] == "code_locked"

    # A fresh code unlocks the handover
    client.post(f"/api/agent/orders/grocery/{order['id']}/delivery-code", headers=agent_headers)
    fresh = client.get(f"/api/buyer/orders/grocery/{order['id']}/code", headers=buyer_headers).json()["code_value"]
    assert client.post(url, headers=agent_headers, json={"code": fresh}).status_code == 200


def test_cancel_expires_outstanding_codes(client, factory, ready_order, admin):
    _, admin_headers = admin
    order = ready_order("grocery")
    user, agent = factory.agent("fast_delivery")
    headers = factory.headers(user, agent)
    client.post(f"/api/agent/orders/grocery/{order['id']}/accept", headers=headers)
    client.post(f"/api/agent/orders/grocery/{order['id']}/pickup-code", headers=headers)

    resp = client.post(f"/api/admin/orders/grocery/{order['id']}/cancel", headers=admin_headers,
                       json={"reason": "fraud check"})
    assert resp.status_code == 200
    assert client.get("/api/agent/codes", headers=headers).json() == []
    assert client.get("/api/agent/profile", headers=headers).json()["agent"]["status"] == "available"
