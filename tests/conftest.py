import os
import tempfile

# Point the app at a throwaway database before anything imports the engine
_TMP_DIR = tempfile.mkdtemp(prefix="marketplace-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["MAIL_SUPPRESS_SEND"] = "1"
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from marketplace.auth import hash_password, issue_session
from marketplace.database import engine, new_session, add_user, add_agent, add_product, add_pickup_site
from marketplace.db_models import AgentStatus, ApprovalState, ProductType
from marketplace.main import app


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


class Factory:
    """Creates rows straight in the database and hands back auth headers."""

    def __init__(self):
        self._seq = 0

    def _email(self, prefix):
        self._seq += 1
        return f"{prefix}{self._seq}@example.com"

    def user(self, role="buyer", name=None, password="secret123"):
        with new_session() as session:
            user = add_user(session, name or role.title(), self._email(role), hash_password(password), role)
            session.commit()
            return user

    def agent(self, agent_type="fast_delivery", approved=True, online=True, pickup_site_id=None):
        with new_session() as session:
            user = add_user(session, agent_type, self._email("agent"), hash_password("secret123"), "agent")
            agent = add_agent(session, user, agent_type, pickup_site_id)
            if approved:
                agent.approval_status = ApprovalState.approved.value
            if online:
                agent.status = AgentStatus.available.value
            session.add(agent)
            session.commit()
            return user, agent

    def product(self, seller, price=4500.0, stock=10, product_type=ProductType.grocery.value, name="Rice 5kg"):
        with new_session() as session:
            product = add_product(session, seller.id, name, price, stock, product_type)
            session.commit()
            return product

    def site(self, name="Kimironko Hub"):
        with new_session() as session:
            site = add_pickup_site(session, name=name, address="KG 11 Ave", city="Kigali")
            session.commit()
            return site

    @staticmethod
    def headers(user, agent=None):
        token, _ = issue_session(user, agent)
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def factory():
    return Factory()


@pytest.fixture
def admin(factory):
    user = factory.user("admin")
    return user, factory.headers(user)


@pytest.fixture
def seller(factory):
    user = factory.user("seller")
    return user, factory.headers(user)


@pytest.fixture
def buyer(factory):
    user = factory.user("buyer")
    return user, factory.headers(user)


def place_ready_order(client, factory, seller, buyer, kind="grocery", price=4500.0, site=None):
    """Buyer orders one item, seller moves it to ready_for_pickup. Returns the order JSON."""
    seller_user, seller_headers = seller
    _, buyer_headers = buyer

    if kind == "grocery":
        product = factory.product(seller_user, price=price, product_type="grocery")
        resp = client.post("/api/buyer/grocery-orders", headers=buyer_headers, json={
            "items": [{"product_id": product.id, "quantity": 1}],
            "delivery_address": "KN 5 Rd, Kigali",
        })
    else:
        product = factory.product(seller_user, price=price, product_type="physical", name="Kettle")
        site = site or factory.site()
        resp = client.post("/api/buyer/orders", headers=buyer_headers, json={
            "items": [{"product_id": product.id, "quantity": 1}],
            "pickup_site_id": site.id,
        })
    assert resp.status_code == 201, resp.text
    order = resp.json()

    for target in ("processing", "ready_for_pickup"):
        resp = client.post(f"/api/seller/orders/{kind}/{order['id']}/status",
                           headers=seller_headers, json={"status": target})
        assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
def ready_order(client, factory, seller, buyer):
    return lambda kind="grocery", **kw: place_ready_order(client, factory, seller, buyer, kind, **kw)


def deliver_grocery_order(client, factory, seller, buyer, price=4500.0):
    """Runs a grocery order from checkout to 'delivered'. Returns (order_id, fda_headers)."""
    order = place_ready_order(client, factory, seller, buyer, "grocery", price)
    _, seller_headers = seller
    _, buyer_headers = buyer
    user, agent = factory.agent("fast_delivery")
    fda = factory.headers(user, agent)
    base = f"/api/agent/orders/grocery/{order['id']}"

    assert client.post(f"{base}/accept", headers=fda).status_code == 200
    pickup = client.post(f"{base}/pickup-code", headers=fda).json()["code"]
    resp = client.post(f"/api/seller/orders/grocery/{order['id']}/verify-pickup",
                       headers=seller_headers, json={"code": pickup})
    assert resp.status_code == 200, resp.text

    assert client.post(f"{base}/delivery-code", headers=fda).status_code == 200
    code = client.get(f"/api/buyer/orders/grocery/{order['id']}/code", headers=buyer_headers).json()["code_value"]
    resp = client.post(f"{base}/confirm-delivery", headers=fda, json={"code": code})
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "delivered"
    return order["id"], fda


@pytest.fixture
def delivered_grocery(client, factory, seller, buyer):
    return lambda **kw: deliver_grocery_order(client, factory, seller, buyer, **kw)
