import json
from types import SimpleNamespace

from marketplace.database import new_session
from marketplace.db_models import User
from marketplace.receipts import whatsapp_link, qr_payload, qr_png


def test_whatsapp_link_keeps_only_digits():
    assert whatsapp_link("+250 (788) 123-456") == "https://wa.me/250788123456"
    assert whatsapp_link("0788123456", "Order PSM-1 ready?") == "https://wa.me/0788123456?text=Order%20PSM-1%20ready%3F"
    assert whatsapp_link(None) is None
    assert whatsapp_link("n/a") is None


def test_qr_carries_the_collection_code():
    order = SimpleNamespace(order_number="PSM-20260301-ABC123", id=7, total_amount=3000.0)
    payload = json.loads(qr_payload(order, "482913", "RWF"))
    assert payload == {
        "order_number": "PSM-20260301-ABC123",
        "order_id": 7,
        "total_amount": 3000.0,
        "currency": "RWF",
        "collection_code": "482913",
    }
    assert qr_png(qr_payload(order, "482913", "RWF")).read(8) == b"\x89PNG\r\n\x1a\n"


def test_walk_in_receipt_prints_as_pdf(client, factory):
    site = factory.site("Kimironko Hub")
    psm_user, psm = factory.agent("pickup_site_manager", pickup_site_id=site.id)
    headers = factory.headers(psm_user, psm)

    order_id = client.post("/api/pickup-site/manual-orders", headers=headers, json={
        "buyer_name": "Aline", "buyer_phone": "+250788000222",
        "items": [{"product_name": "Beans 2kg", "unit_price": 2200, "quantity": 1}],
    }).json()["order"]["id"]

    # Before the goods are ready there is no code to print yet
    resp = client.get(f"/api/pickup-site/manual-orders/{order_id}/receipt.pdf", headers=headers)
    assert resp.status_code == 200
    assert resp.content.startswith(b"%PDF")

    client.post(f"/api/pickup-site/manual-orders/{order_id}/ready", headers=headers)
    resp = client.get(f"/api/pickup-site/manual-orders/{order_id}/receipt.pdf", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert "receipt-PSM-" in resp.headers["content-disposition"]
    assert resp.content.startswith(b"%PDF")

    other_site = factory.site("Gisozi Hub")
    outsider_user, outsider = factory.agent("pickup_site_manager", pickup_site_id=other_site.id)
    resp = client.get(f"/api/pickup-site/manual-orders/{order_id}/receipt.pdf",
                      headers=factory.headers(outsider_user, outsider))
    assert resp.status_code == 404


def test_order_view_links_the_other_party_on_whatsapp(client, seller, buyer, ready_order):
    seller_user, seller_headers = seller
    _, buyer_headers = buyer
    with new_session() as session:
        stored = session.get(User, seller_user.id)
        stored.phone = "+250 788 123 456"
        session.add(stored)
        session.commit()

    order = ready_order("grocery")
    contacts = client.get(f"/api/orders/grocery/{order['id']}", headers=buyer_headers).json()["contacts"]
    assert [c["role"] for c in contacts] == ["seller"]
    assert contacts[0]["whatsapp_url"].startswith("https://wa.me/250788123456?text=Hello%2C%20this%20is%20about%20order%20")

    # The buyer has no phone on file, so the seller gets no link
    contacts = client.get(f"/api/orders/grocery/{order['id']}", headers=seller_headers).json()["contacts"]
    assert contacts == [{"role": "buyer", "name": "Buyer", "phone": None, "whatsapp_url": None}]
