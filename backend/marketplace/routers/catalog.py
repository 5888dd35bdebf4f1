# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Public Catalog Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from typing import List, Optional

from fastapi import APIRouter, Query

from marketplace.database import new_session, search_products, get_product, list_pickup_sites
from marketplace.orders import quote_promotion
from marketplace.schemas import ProductRead, PickupSiteRead, PromotionQuote

router = APIRouter(prefix="/api", tags=["Catalog"])


@router.get("/products", response_model=List[ProductRead])
def list_products(
    q: Optional[str] = None,
    product_type: Optional[str] = Query(default=None, pattern="^(physical|grocery)$"),
    seller_id: Optional[int] = None,
):
    with new_session() as session:
        products = search_products(session, query=q, product_type=product_type, seller_id=seller_id)
        return [ProductRead.model_validate(p) for p in products]


@router.get("/products/{product_id}", response_model=ProductRead)
def read_product(product_id: int):
    with new_session() as session:
        return ProductRead.model_validate(get_product(session, product_id))


@router.get("/pickup-sites", response_model=List[PickupSiteRead])
def read_pickup_sites():
    with new_session() as session:
        return [PickupSiteRead.model_validate(s) for s in list_pickup_sites(session)]


# Lets the checkout page show the discount before placing the order
@router.get("/promotions/{code}/quote", response_model=PromotionQuote)
def promotion_quote(code: str, subtotal: float = Query(gt=0)):
    with new_session() as session:
        promotion, discount = quote_promotion(session, code, subtotal)
        return PromotionQuote(
            code=promotion.code,
            subtotal=subtotal,
            discount_amount=discount,
            total=round(subtotal - discount, 2),
        )
