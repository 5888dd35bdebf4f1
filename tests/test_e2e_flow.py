from marketplace.database import new_session, get_order, get_pickup_site
from marketplace.db_models import Agent


def _approve_all(client, admin_headers, kind, order_id):
    rows = client.get("/api/admin/approvals", headers=admin_headers).json()
    mine = [a for a in rows if a["order_kind"] == kind and a["order_id"] == order_id]
    for approval in mine:
        resp = client.post(f"/api/admin/approvals/{approval['id']}/approve", headers=admin_headers)
        assert resp.status_code == 200, resp.text
    return {a["approval_type"]: a["amount"] for a in mine}


def test_grocery_order_of_4500_settles_and_completes(client, admin, buyer, delivered_grocery):
    _, admin_headers = admin
    _, buyer_headers = buyer
    order_id, _ = delivered_grocery(price=4500.0)

    amounts = _approve_all(client, admin_headers, "grocery", order_id)
    assert amounts == {"SELLER_PAYOUT": 3719.01, "FDA_COMMISSION": 390.5}

    detail = client.get(f"/api/orders/grocery/{order_id}", headers=buyer_headers).json()
    order = detail["order"]
    assert order["status"] == "completed"
    assert order["completed_at"] is not None
    assert order["seller_payout_status"] == "released"
    assert order["seller_payout_amount"] == 3719.01
    assert order["fda_commission_status"] == "released"
    assert order["fda_commission_amount"] == 390.5

    assert [e["status"] for e in detail["tracking"]] == [
        "pending", "processing", "ready_for_pickup", "assigned",
        "picked_up", "en_route", "delivered", "completed",
    ]


def test_regular_order_goes_through_pickup_site(client, factory, admin, seller, buyer, ready_order):
    _, admin_headers = admin
    _, seller_headers = seller
    _, buyer_headers = buyer
    site = factory.site("Nyabugogo Hub")
    psm_user, psm = factory.agent("pickup_site_manager", pickup_site_id=site.id)
    pda_user, pda = factory.agent("pickup_delivery")
    psm_headers = factory.headers(psm_user, psm)
    pda_headers = factory.headers(pda_user, pda)

    order = ready_order("regular", site=site)
    order_id = order["id"]
    base = f"/api/agent/orders/regular/{order_id}"

    assert client.post(f"{base}/accept", headers=pda_headers).status_code == 200
    pickup = client.post(f"{base}/pickup-code", headers=pda_headers).json()["code"]
    assert client.post(f"/api/seller/orders/regular/{order_id}/verify-pickup", headers=seller_headers,
                       json={"code": pickup}).status_code == 200

    # Agent at the site: shows the deposit code, the manager types it in
    deposit = client.post(f"{base}/deposit-code", headers=pda_headers).json()
    assert deposit["code_type"] == "psm_deposit"
    resp = client.post(f"/api/pickup-site/orders/{order_id}/confirm-deposit", headers=psm_headers,
                       json={"code": deposit["code"]})
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered_to_psm"

    with new_session() as session:
        assert get_pickup_site(session, site.id).current_load == 1
        assert get_order(session, "regular", order_id).psm_agent_id == psm.id
    assert client.get("/api/agent/profile", headers=pda_headers).json()["agent"]["status"] == "available"

    waiting = client.get("/api/pickup-site/orders", headers=psm_headers, params={"status": "delivered_to_psm"}).json()
    assert [o["id"] for o in waiting] == [order_id]

    # Buyer collects with their own code
    held = client.get(f"/api/buyer/orders/regular/{order_id}/code", headers=buyer_headers).json()
    assert held["code_type"] == "buyer_collection"
    resp = client.post(f"/api/pickup-site/orders/regular/{order_id}/confirm-collection", headers=psm_headers,
                       json={"code": held["code_value"]})
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"

    with new_session() as session:
        assert get_pickup_site(session, site.id).current_load == 0

    amounts = _approve_all(client, admin_headers, "regular", order_id)
    assert amounts == {"SELLER_PAYOUT": 3719.01, "PDA_COMMISSION": 546.69, "PSM_COMMISSION": 117.15}

    final = client.get(f"/api/orders/regular/{order_id}", headers=buyer_headers).json()["order"]
    assert final["status"] == "completed"
    assert final["pda_commission_status"] == "released"
    assert final["psm_commission_status"] == "released"


def test_site_manager_of_another_site_cannot_confirm(client, factory, seller, ready_order):
    _, seller_headers = seller
    site = factory.site("Kicukiro Hub")
    other_site = factory.site("Gisozi Hub")
    outsider_user, outsider = factory.agent("pickup_site_manager", pickup_site_id=other_site.id)
    pda_user, pda = factory.agent("pickup_delivery")
    pda_headers = factory.headers(pda_user, pda)

    order_id = ready_order("regular", site=site)["id"]
    base = f"/api/agent/orders/regular/{order_id}"
    client.post(f"{base}/accept", headers=pda_headers)
    pickup = client.post(f"{base}/pickup-code", headers=pda_headers).json()["code"]
    client.post(f"/api/seller/orders/regular/{order_id}/verify-pickup", headers=seller_headers, json={"code": pickup})
    deposit = client.post(f"{base}/deposit-code", headers=pda_headers).json()["code"]

    resp = client.post(f"/api/pickup-site/orders/{order_id}/confirm-deposit",
                       headers=factory.headers(outsider_user, outsider), json={"code": deposit})
    assert resp.status_code == 404


def test_walk_in_order_at_pickup_site(client, factory, admin):
    _, admin_headers = admin
    site = factory.site("Kimironko Hub")
    psm_user, psm = factory.agent("pickup_site_manager", pickup_site_id=site.id)
    psm_headers = factory.headers(psm_user, psm)

    resp = client.post("/api/pickup-site/manual-orders", headers=psm_headers, json={
        "buyer_name": "Claudine", "buyer_phone": "+250788000111",
        "items": [{"product_name": "Sugar 1kg", "unit_price": 1500, "quantity": 2}],
    })
    assert resp.status_code == 201
    receipt = resp.json()
    order_id = receipt["order"]["id"]
    assert receipt["order"]["total_amount"] == 3000.0
    assert receipt["order"]["order_number"].startswith("PSM-")
    assert receipt["pickup_site"]["name"] == "Kimironko Hub"
    assert receipt["collection_code"] is None

    receipt = client.post(f"/api/pickup-site/manual-orders/{order_id}/ready", headers=psm_headers).json()
    assert receipt["order"]["status"] == "ready_for_pickup"
    code = receipt["collection_code"]
    assert code is not None

    resp = client.post(f"/api/pickup-site/orders/manual/{order_id}/confirm-collection", headers=psm_headers,
                       json={"code": code})
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"

    amounts = _approve_all(client, admin_headers, "manual", order_id)
    assert amounts == {"PSM_COMMISSION": 750.0}

    orders = client.get("/api/admin/orders", headers=admin_headers, params={"kind": "manual"}).json()
    assert orders[0]["status"] == "completed"
    assert orders[0]["psm_commission_status"] == "released"


def _deposit_regular_order(client, factory, seller, ready_order, site, pda_rate=None):
    """Runs a regular order up to delivered_to_psm. Returns (order_id, psm_headers)."""
    _, seller_headers = seller
    psm_user, psm = factory.agent("pickup_site_manager", pickup_site_id=site.id)
    pda_user, pda = factory.agent("pickup_delivery")
    if pda_rate is not None:
        with new_session() as session:
            pda = session.get(Agent, pda.id)
            pda.commission_rate = pda_rate
            session.add(pda)
            session.commit()
    pda_headers = factory.headers(pda_user, pda)

    order_id = ready_order("regular", site=site)["id"]
    base = f"/api/agent/orders/regular/{order_id}"
    client.post(f"{base}/accept", headers=pda_headers)
    pickup = client.post(f"{base}/pickup-code", headers=pda_headers).json()["code"]
    client.post(f"/api/seller/orders/regular/{order_id}/verify-pickup", headers=seller_headers, json={"code": pickup})
    deposit = client.post(f"{base}/deposit-code", headers=pda_headers).json()["code"]
    psm_headers = factory.headers(psm_user, psm)
    resp = client.post(f"/api/pickup-site/orders/{order_id}/confirm-deposit", headers=psm_headers,
                       json={"code": deposit})
    assert resp.status_code == 200, resp.text
    return order_id, psm_headers


def test_cancelling_a_deposited_order_frees_the_site(client, factory, admin, seller, ready_order):
    _, admin_headers = admin
    site = factory.site("Kacyiru Hub")
    order_id, _ = _deposit_regular_order(client, factory, seller, ready_order, site)

    with new_session() as session:
        assert get_pickup_site(session, site.id).current_load == 1

    resp = client.post(f"/api/admin/orders/regular/{order_id}/cancel", headers=admin_headers,
                       json={"reason": "Damaged parcel"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    with new_session() as session:
        assert get_pickup_site(session, site.id).current_load == 0


def test_high_agent_rate_never_blocks_collection(client, factory, admin, seller, buyer, ready_order):
    _, admin_headers = admin
    _, buyer_headers = buyer
    site = factory.site("Kanombe Hub")
    order_id, psm_headers = _deposit_regular_order(client, factory, seller, ready_order, site, pda_rate=90)

    code = client.get(f"/api/buyer/orders/regular/{order_id}/code", headers=buyer_headers).json()["code_value"]
    resp = client.post(f"/api/pickup-site/orders/regular/{order_id}/confirm-collection", headers=psm_headers,
                       json={"code": code})
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "delivered"

    # Profit of 780.99: the PDA takes 90%, the site manager what is left
    amounts = _approve_all(client, admin_headers, "regular", order_id)
    assert amounts["PDA_COMMISSION"] == 702.89
    assert amounts["PSM_COMMISSION"] == 78.1


def test_admin_cannot_grant_rates_that_crowd_out_the_site_manager(client, factory, admin):
    _, admin_headers = admin
    _, pda = factory.agent("pickup_delivery", approved=False)

    resp = client.post(f"/api/admin/agents/{pda.id}/approve", headers=admin_headers, json={"commission_rate": 90})
    assert resp.status_code == 400
    assert "85" in resp.json()["detail"]

    resp = client.post(f"/api/admin/agents/{pda.id}/approve", headers=admin_headers, json={"commission_rate": 80})
    assert resp.status_code == 200
    assert resp.json()["commission_rate"] == 80.0
