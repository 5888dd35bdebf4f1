from datetime import timedelta

from jose import jwt
from sqlmodel import select

from marketplace.auth import create_access_token, hash_password, verify_password
from marketplace.config import SECRET_KEY, ALGORITHM, SESSION_SCHEMA_VERSION, SESSION_STORAGE_KEY
from marketplace.database import new_session
from marketplace.db_models import PasswordReset


def test_password_hash_is_salted():
    first, second = hash_password("secret123"), hash_password("secret123")
    assert first != second
    assert verify_password("secret123", first)
    assert not verify_password("wrong", first)
    assert not verify_password("secret123", "not-a-hash")


def test_register_login_and_session_context(client):
    resp = client.post("/api/auth/register", json={
        "name": "Aline", "email": "aline@example.com", "password": "secret123", "role": "buyer",
    })
    assert resp.status_code == 201
    assert resp.json()["role"] == "buyer"

    resp = client.post("/api/auth/login", json={"email": "aline@example.com", "password": "secret123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["session"]["version"] == SESSION_SCHEMA_VERSION
    assert body["session"]["storage_key"] == SESSION_STORAGE_KEY
    assert body["session"]["role"] == "buyer"

    headers = {"Authorization": f"Bearer {body['access_token']}"}
    resp = client.get("/api/auth/session", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["email"] == "aline@example.com"


def test_duplicate_email_is_rejected(client):
    payload = {"name": "A", "email": "dup@example.com", "password": "secret123"}
    assert client.post("/api/auth/register", json=payload).status_code == 201
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 409
    assert resp.json()["code"] == "conflict"


def test_cannot_self_register_as_admin(client):
    resp = client.post("/api/auth/register", json={
        "name": "Eve", "email": "eve@example.com", "password": "secret123", "role": "admin",
    })
    assert resp.status_code == 422


def test_wrong_password_gives_401(client, factory):
    user = factory.user("buyer")
    resp = client.post("/api/auth/login", json={"email": user.email, "password": "nope"})
    assert resp.status_code == 401


def test_missing_and_bad_tokens_are_refused(client):
    assert client.get("/api/auth/me").status_code in (401, 403)
    resp = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthorized"


def test_token_from_older_session_version_is_refused(client, factory):
    user = factory.user("buyer")
    token = create_access_token({"sub": str(user.id), "role": "buyer"})
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 200

    # Forge a token claiming an outdated payload version
    old = jwt.encode({"sub": str(user.id), "role": "buyer", "ver": SESSION_SCHEMA_VERSION - 1,
                      "exp": 4102444800}, SECRET_KEY, algorithm=ALGORITHM)
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {old}"}).status_code == 401


def test_expired_token_is_refused(client, factory):
    user = factory.user("buyer")
    token = create_access_token({"sub": str(user.id), "role": "buyer"}, timedelta(minutes=-1))
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_role_guard_on_admin_routes(client, buyer, admin):
    _, buyer_headers = buyer
    _, admin_headers = admin
    assert client.get("/api/admin/approvals", headers=buyer_headers).status_code == 403
    assert client.get("/api/admin/approvals", headers=admin_headers).status_code == 200


def test_deactivated_user_loses_access(client, factory, admin):
    user = factory.user("buyer")
    headers = factory.headers(user)
    _, admin_headers = admin

    resp = client.patch(f"/api/admin/users/{user.id}/status", headers=admin_headers, json={"is_active": False})
    assert resp.status_code == 200
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_agent_registers_pending_and_is_blocked_until_approved(client, admin):
    _, admin_headers = admin
    resp = client.post("/api/auth/register/agent", json={
        "name": "Jean", "email": "jean@example.com", "password": "secret123", "agent_type": "fast_delivery",
    })
    assert resp.status_code == 201
    agent = resp.json()
    assert agent["approval_status"] == "pending"

    login = client.post("/api/auth/login", json={"email": "jean@example.com", "password": "secret123"}).json()
    assert login["session"]["agent_type"] == "fast_delivery"
    assert login["session"]["approval_status"] == "pending"
    headers = {"Authorization": f"Bearer {login['access_token']}"}

    assert client.get("/api/agent/orders/available", headers=headers).status_code == 403

    resp = client.post(f"/api/admin/agents/{agent['id']}/approve", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["approval_status"] == "approved"
    assert client.get("/api/agent/orders/available", headers=headers).status_code == 200


def test_site_manager_needs_a_site_before_approval(client, admin, factory):
    _, admin_headers = admin
    resp = client.post("/api/auth/register/agent", json={
        "name": "Psm", "email": "psm@example.com", "password": "secret123", "agent_type": "pickup_site_manager",
    })
    agent_id = resp.json()["id"]

    assert client.post(f"/api/admin/agents/{agent_id}/approve", headers=admin_headers).status_code == 400

    site = factory.site()
    resp = client.post(f"/api/admin/agents/{agent_id}/approve", headers=admin_headers,
                       json={"pickup_site_id": site.id})
    assert resp.status_code == 200
    assert resp.json()["pickup_site_id"] == site.id


def test_password_reset_with_otp(client, factory):
    user = factory.user("buyer")

    assert client.post("/api/auth/forgot-password", json={"email": user.email}).status_code == 200
    with new_session() as session:
        otp = session.exec(select(PasswordReset).where(PasswordReset.email == user.email)).one().otp

    assert client.post("/api/auth/reset-password", json={
        "email": user.email, "otp": "000000" if otp != "000000" else "111111", "new_password": "newpass1",
    }).status_code == 400

    assert client.post("/api/auth/verify-otp", json={"email": user.email, "otp": otp}).status_code == 200

    resp = client.post("/api/auth/reset-password", json={"email": user.email, "otp": otp, "new_password": "newpass1"})
    assert resp.status_code == 200
    assert client.post("/api/auth/login", json={"email": user.email, "password": "newpass1"}).status_code == 200
