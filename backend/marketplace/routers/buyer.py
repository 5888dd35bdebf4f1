# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Buyer Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from marketplace.database import new_session, list_orders, get_order
from marketplace.db_models import User, OrderKind, CodeType
from marketplace.dependencies import get_current_buyer
from marketplace.errors import NotFoundError
from marketplace.handover import active_code
from marketplace.orders import place_order, buyer_cancel, submit_payment_proof
from marketplace.schemas import (
    RegularOrderCreate,
    GroceryOrderCreate,
    OrderRead,
    CancelRequest,
    HeldCode,
    PaymentProofCreate,
    PaymentProofRead,
    OrderKindName,
)

router = APIRouter(prefix="/api/buyer", tags=["Buyer"])

BUYER_KINDS = (OrderKind.regular.value, OrderKind.grocery.value)


@router.post("/orders", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(req: RegularOrderCreate, buyer: User = Depends(get_current_buyer)):
    with new_session() as session:
        order = place_order(
            session, buyer, OrderKind.regular.value,
            [(i.product_id, i.quantity) for i in req.items],
            promotion_code=req.promotion_code,
            pickup_site_id=req.pickup_site_id,
        )
        session.commit()
        return OrderRead.of(OrderKind.regular.value, order)


@router.post("/grocery-orders", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_grocery_order(req: GroceryOrderCreate, buyer: User = Depends(get_current_buyer)):
    with new_session() as session:
        order = place_order(
            session, buyer, OrderKind.grocery.value,
            [(i.product_id, i.quantity) for i in req.items],
            promotion_code=req.promotion_code,
            delivery_address=req.delivery_address,
        )
        session.commit()
        return OrderRead.of(OrderKind.grocery.value, order)


@router.get("/orders", response_model=List[OrderRead])
def my_orders(kind: Optional[OrderKindName] = None, status: Optional[str] = None,
              buyer: User = Depends(get_current_buyer)):
    kinds = [kind] if kind else BUYER_KINDS
    with new_session() as session:
        result = []
        for k in kinds:
            if k not in BUYER_KINDS:
                continue
            result.extend(OrderRead.of(k, o) for o in list_orders(session, k, user_id=buyer.id, status=status))
        return sorted(result, key=lambda o: o.created_at, reverse=True)


@router.post("/orders/{kind}/{order_id}/cancel", response_model=OrderRead)
def cancel_my_order(kind: OrderKindName, order_id: int, req: Optional[CancelRequest] = None,
                    buyer: User = Depends(get_current_buyer)):
    with new_session() as session:
        order = buyer_cancel(session, buyer, kind, order_id, req.reason if req else None)
        session.commit()
        return OrderRead.of(kind, order)


# The code the buyer reads out to the agent (delivery) or the site manager (collection)
@router.get("/orders/{kind}/{order_id}/code", response_model=HeldCode)
def my_handover_code(kind: OrderKindName, order_id: int, buyer: User = Depends(get_current_buyer)):
    code_type = CodeType.buyer_delivery.value if kind == OrderKind.grocery.value else CodeType.buyer_collection.value
    with new_session() as session:
        order = get_order(session, kind, order_id)
        if getattr(order, "user_id", None) != buyer.id:
            raise NotFoundError("Order not found")
        code = active_code(session, kind, order_id, code_type)
        if code is None or code.holder_user_id != buyer.id:
            raise NotFoundError("No active code for this order yet")
        return HeldCode.model_validate(code)


@router.post("/orders/{kind}/{order_id}/payment-proof", response_model=PaymentProofRead,
             status_code=status.HTTP_201_CREATED)
def upload_payment_proof(kind: OrderKindName, order_id: int, req: PaymentProofCreate,
                         buyer: User = Depends(get_current_buyer)):
    with new_session() as session:
        proof = submit_payment_proof(session, buyer, kind, order_id, req.payment_method, req.transaction_id, req.amount)
        session.commit()
        return PaymentProofRead.model_validate(proof)
