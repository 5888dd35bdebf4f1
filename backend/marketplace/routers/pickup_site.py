# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Pickup Site Manager Endpoints (PSM) ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status

from marketplace.database import new_session, get_order
from marketplace.db_models import Agent, OrderKind
from marketplace.delivery import (
    site_orders,
    confirm_deposit,
    confirm_collection,
    mark_manual_ready,
    manual_receipt,
)
from marketplace.dependencies import get_site_manager
from marketplace.errors import NotFoundError
from marketplace.orders import create_manual_order, cancel_order
from marketplace.receipts import render_manual_receipt
from marketplace.schemas import (
    ManualOrderCreate,
    ManualReceipt,
    OrderRead,
    OrderItemRead,
    PickupSiteRead,
    CodeSubmit,
    CancelRequest,
)

router = APIRouter(prefix="/api/pickup-site", tags=["Pickup Site"])

SITE_KINDS = (OrderKind.regular.value, OrderKind.manual.value)


def _receipt(data: dict) -> ManualReceipt:
    return ManualReceipt(
        order=OrderRead.of(OrderKind.manual.value, data["order"]),
        items=[OrderItemRead.model_validate(i) for i in data["items"]],
        pickup_site=PickupSiteRead.model_validate(data["pickup_site"]) if data["pickup_site"] else None,
        collection_code=data["collection_code"],
        collection_code_expires_at=data["collection_code_expires_at"],
        currency=data["currency"],
    )


@router.get("/orders", response_model=List[OrderRead])
def orders_at_my_site(status: Optional[str] = None, manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        return [OrderRead.of(kind, order) for kind, order in site_orders(session, manager, status)]


# PDA hands the parcel over; the manager types in the PDA's deposit code
@router.post("/orders/{order_id}/confirm-deposit", response_model=OrderRead)
def deposit(order_id: int, req: CodeSubmit, background_tasks: BackgroundTasks,
            manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        order = confirm_deposit(session, order_id, manager, req.code, background_tasks)
        session.commit()
        return OrderRead.of(OrderKind.regular.value, order)


# Buyer collects; the manager types in the buyer's collection code
@router.post("/orders/{kind}/{order_id}/confirm-collection", response_model=OrderRead)
def collection(kind: str, order_id: int, req: CodeSubmit, manager: Agent = Depends(get_site_manager)):
    if kind not in SITE_KINDS:
        raise NotFoundError("Order not found")
    with new_session() as session:
        order = confirm_collection(session, kind, order_id, manager, req.code)
        session.commit()
        return OrderRead.of(kind, order)

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Manual (walk-in) orders
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.post("/manual-orders", response_model=ManualReceipt, status_code=status.HTTP_201_CREATED)
def new_manual_order(req: ManualOrderCreate, manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        order = create_manual_order(
            session, manager, req.buyer_name, req.buyer_phone,
            [(i.product_name, i.unit_price, i.quantity) for i in req.items],
            buyer_email=req.buyer_email, notes=req.notes,
        )
        session.commit()
        return _receipt(manual_receipt(session, order.id, manager))


@router.get("/manual-orders", response_model=List[OrderRead])
def my_manual_orders(manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        return [OrderRead.of(kind, order) for kind, order in site_orders(session, manager)
                if kind == OrderKind.manual.value]


@router.post("/manual-orders/{order_id}/ready", response_model=ManualReceipt)
def manual_ready(order_id: int, manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        mark_manual_ready(session, order_id, manager)
        session.commit()
        return _receipt(manual_receipt(session, order_id, manager))


@router.get("/manual-orders/{order_id}/receipt", response_model=ManualReceipt)
def receipt(order_id: int, manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        return _receipt(manual_receipt(session, order_id, manager))


# Printable version of the same receipt, with the collection code as a QR code
@router.get("/manual-orders/{order_id}/receipt.pdf")
def receipt_pdf(order_id: int, manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        data = manual_receipt(session, order_id, manager)
    filename = f"receipt-{data['order'].order_number}.pdf"
    return Response(
        content=render_manual_receipt(data),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@router.post("/manual-orders/{order_id}/cancel", response_model=OrderRead)
def cancel_manual(order_id: int, req: Optional[CancelRequest] = None, manager: Agent = Depends(get_site_manager)):
    with new_session() as session:
        order = get_order(session, OrderKind.manual.value, order_id)
        if order.created_by_agent_id != manager.id:
            raise NotFoundError("Order not found")
        order = cancel_order(session, OrderKind.manual.value, order_id, manager.user_id,
                             req.reason if req else "Cancelled at pickup site")
        session.commit()
        return OrderRead.of(OrderKind.manual.value, order)
