# Printable receipts and WhatsApp contact links

# A walk-in buyer leaves the pickup site with a one page PDF: what they paid
# for, and the collection code both printed and as a QR code the manager can
# scan when they come back.

import io
import json
import re
from typing import Optional
from urllib.parse import quote

import segno
from fpdf import FPDF
from fpdf.enums import XPos, YPos

WHATSAPP_BASE = "https://wa.me/"


def whatsapp_link(phone: Optional[str], text: Optional[str] = None) -> Optional[str]:
    """wa.me deep link for a phone number, or None when there is no usable number.

    >>> whatsapp_link("+250 788 123 456", "Hi")
    'https://wa.me/250788123456?text=Hi'
    """
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        return None
    link = WHATSAPP_BASE + digits
    if text:
        link += "?text=" + quote(text)
    return link


def qr_payload(order, code: Optional[str], currency: str) -> str:
    return json.dumps({
        "order_number": order.order_number,
        "order_id": order.id,
        "total_amount": order.total_amount,
        "currency": currency,
        "collection_code": code,
    }, sort_keys=True)


def qr_png(payload: str) -> io.BytesIO:
    buffer = io.BytesIO()
    segno.make_qr(payload, error="m").save(buffer, kind="png", scale=5, border=2)
    buffer.seek(0)
    return buffer


# -----------------------------------------------------------------
# PDF
# -----------------------------------------------------------------

def _latin1(value) -> str:
    # Core PDF fonts only cover latin-1
    return str(value if value is not None else "").encode("latin-1", "replace").decode("latin-1")


def _money(amount: float, currency: str) -> str:
    return f"{amount:,.2f} {currency}"


def _line(pdf: FPDF, text: str, size: int = 10, style: str = "", height: float = 6):
    pdf.set_font("Helvetica", style=style, size=size)
    pdf.cell(0, height, _latin1(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)


def render_manual_receipt(receipt: dict) -> bytes:
    """One page A5 receipt for a walk-in order (see delivery.manual_receipt for the dict)."""
    order = receipt["order"]
    site = receipt["pickup_site"]
    currency = receipt["currency"]
    code = receipt["collection_code"]

    pdf = FPDF(format="A5")
    pdf.set_auto_page_break(auto=True, margin=12)
    pdf.add_page()

    _line(pdf, "Pickup Receipt", size=16, style="B", height=9)
    if site is not None:
        _line(pdf, site.name, style="B")
        _line(pdf, ", ".join(part for part in (site.address, site.city) if part))
    _line(pdf, f"Order {order.order_number}   {order.created_at:%Y-%m-%d %H:%M} UTC")
    pdf.ln(3)

    _line(pdf, "Customer", style="B")
    _line(pdf, f"{order.buyer_name}   {order.buyer_phone}")
    pdf.ln(3)

    # Items table
    widths = (70, 15, 25, 18)
    pdf.set_font("Helvetica", style="B", size=9)
    for width, title in zip(widths, ("Item", "Qty", "Price", "Total")):
        pdf.cell(width, 6, title, border="B")
    pdf.ln()
    pdf.set_font("Helvetica", size=9)
    for item in receipt["items"]:
        pdf.cell(widths[0], 6, _latin1(item.product_name[:40]))
        pdf.cell(widths[1], 6, str(item.quantity))
        pdf.cell(widths[2], 6, f"{item.unit_price:,.2f}")
        pdf.cell(widths[3], 6, f"{item.unit_price * item.quantity:,.2f}", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(2)

    if order.discount_amount:
        _line(pdf, f"Discount: -{_money(order.discount_amount, currency)}")
    _line(pdf, f"TOTAL: {_money(order.total_amount, currency)}", size=12, style="B", height=8)
    pdf.ln(3)

    if code:
        _line(pdf, f"Collection code: {code}", size=14, style="B", height=9)
        expires_at = receipt.get("collection_code_expires_at")
        if expires_at is not None:
            _line(pdf, f"Valid until {expires_at:%Y-%m-%d %H:%M} UTC", size=9)
        pdf.image(qr_png(qr_payload(order, code, currency)), x=pdf.l_margin, y=pdf.get_y() + 2, w=35)
        pdf.set_y(pdf.get_y() + 40)
    else:
        _line(pdf, "Your collection code is issued once the goods are ready.", size=9)

    if site is not None and site.contact_phone:
        link = whatsapp_link(site.contact_phone, f"Hello, this is about order {order.order_number}")
        if link:
            _line(pdf, f"Questions? WhatsApp the site: {link}", size=8)

    return bytes(pdf.output())
