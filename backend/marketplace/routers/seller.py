# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Seller Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from marketplace.database import new_session, add_product, get_product, update_product, search_products, list_orders
from marketplace.db_models import User, OrderKind
from marketplace.delivery import verify_pickup
from marketplace.dependencies import get_current_seller
from marketplace.errors import NotFoundError
from marketplace.orders import seller_update_status
from marketplace.schemas import (
    ProductCreate,
    ProductUpdate,
    ProductRead,
    OrderRead,
    StatusUpdate,
    CodeSubmit,
)

router = APIRouter(prefix="/api/seller", tags=["Seller"])

SELLER_KINDS = (OrderKind.regular.value, OrderKind.grocery.value)


@router.post("/products", response_model=ProductRead, status_code=status.HTTP_201_CREATED)
def create_product(req: ProductCreate, seller: User = Depends(get_current_seller)):
    with new_session() as session:
        product = add_product(session, seller.id, req.name, req.price, req.stock, req.product_type, req.description)
        session.commit()
        return ProductRead.model_validate(product)


@router.get("/products", response_model=List[ProductRead])
def my_products(seller: User = Depends(get_current_seller)):
    with new_session() as session:
        products = search_products(session, seller_id=seller.id, include_inactive=True)
        return [ProductRead.model_validate(p) for p in products]


@router.put("/products/{product_id}", response_model=ProductRead)
def edit_product(product_id: int, req: ProductUpdate, seller: User = Depends(get_current_seller)):
    with new_session() as session:
        product = get_product(session, product_id)
        if product.seller_id != seller.id:
            raise NotFoundError(f"Product {product_id} not found")
        product = update_product(session, product, req.model_dump(exclude_unset=True))
        session.commit()
        return ProductRead.model_validate(product)


@router.get("/orders", response_model=List[OrderRead])
def incoming_orders(kind: Optional[str] = None, status: Optional[str] = None,
                    seller: User = Depends(get_current_seller)):
    kinds = [kind] if kind in SELLER_KINDS else SELLER_KINDS
    with new_session() as session:
        result = []
        for k in kinds:
            result.extend(OrderRead.of(k, o) for o in list_orders(session, k, seller_id=seller.id, status=status))
        return sorted(result, key=lambda o: o.created_at, reverse=True)


@router.post("/orders/{kind}/{order_id}/status", response_model=OrderRead)
def change_order_status(kind: str, order_id: int, req: StatusUpdate, seller: User = Depends(get_current_seller)):
    if kind not in SELLER_KINDS:
        raise NotFoundError("Order not found")
    with new_session() as session:
        order = seller_update_status(session, seller, kind, order_id, req.status, req.reason)
        session.commit()
        return OrderRead.of(kind, order)


# Seller types in the code shown on the agent's phone
@router.post("/orders/{kind}/{order_id}/verify-pickup", response_model=OrderRead)
def confirm_pickup(kind: str, order_id: int, req: CodeSubmit, seller: User = Depends(get_current_seller)):
    if kind not in SELLER_KINDS:
        raise NotFoundError("Order not found")
    with new_session() as session:
        order = verify_pickup(session, kind, order_id, seller.id, req.code)
        session.commit()
        return OrderRead.of(kind, order)
