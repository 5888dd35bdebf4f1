# Placing, cancelling and administering orders

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from marketplace.config import REQUIRE_PAYMENT_CONFIRMATION
from marketplace.database import (
    get_order,
    get_order_items,
    get_pickup_site,
    get_product,
    get_promotion_by_code,
    get_user,
    get_agent_by_user_id,
)
from marketplace.db_models import (
    User,
    Agent,
    Order,
    GroceryOrder,
    ManualOrder,
    OrderItem,
    Product,
    Promotion,
    PaymentProof,
    OrderKind,
    OrderStatus,
    ProductType,
    PaymentStatus,
    ApprovalState,
    Role,
    AgentType,
    utcnow,
    as_utc,
)
from marketplace.errors import (
    ValidationFailed,
    PermissionDenied,
    PromotionError,
    OrderOwnershipError,
    NotFoundError,
    ConflictError,
)
from marketplace.handover import expire_codes
from marketplace.lifecycle import transition, record_event, TERMINAL
from marketplace.notifications import notify
from marketplace.payouts import round_money, reject_pending_for_order
from marketplace.receipts import whatsapp_link
from marketplace.delivery import refresh_agent_status, adjust_site_load

logger = logging.getLogger(__name__)

ORDER_PREFIX = {
    OrderKind.regular.value: "ORD",
    OrderKind.grocery.value: "GRO",
    OrderKind.manual.value: "PSM",
}

# Product type each buyer-facing kind accepts
KIND_PRODUCT_TYPE = {
    OrderKind.regular.value: ProductType.physical.value,
    OrderKind.grocery.value: ProductType.grocery.value,
}


def new_order_number(kind: str) -> str:
    return f"{ORDER_PREFIX[kind]}-{utcnow():%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


# -----------------------------------------------------------------
# Promotions
# -----------------------------------------------------------------

def promotion_discount(promotion: Promotion, subtotal: float, now: Optional[datetime] = None) -> float:
    """Discount a promotion gives on `subtotal`, or PromotionError if it does not apply."""
    now = as_utc(now) if now else utcnow()
    if not promotion.is_active:
        raise PromotionError("Promotion is not active")
    if promotion.valid_from and now < as_utc(promotion.valid_from):
        raise PromotionError("Promotion has not started yet")
    if promotion.valid_until and now > as_utc(promotion.valid_until):
        raise PromotionError("Promotion has expired")
    if promotion.usage_limit is not None and promotion.used_count >= promotion.usage_limit:
        raise PromotionError("Promotion usage limit reached")
    if subtotal < promotion.min_order_amount:
        raise PromotionError(f"Order must be at least {promotion.min_order_amount:.2f} to use this promotion")

    if promotion.discount_type == "percentage":
        discount = round_money(Decimal(str(subtotal)) * Decimal(str(min(promotion.discount_value, 100))) / Decimal("100"))
    else:
        discount = round_money(min(promotion.discount_value, subtotal))
    return float(discount)


def quote_promotion(session: Session, code: str, subtotal: float):
    promotion = get_promotion_by_code(session, code)
    if promotion is None:
        raise PromotionError("Unknown promotion code")
    discount = promotion_discount(promotion, subtotal)
    return promotion, discount


def redeem_promotion(session: Session, code: str, subtotal: float) -> float:
    promotion, discount = quote_promotion(session, code, subtotal)

    conditions = [Promotion.id == promotion.id]
    if promotion.usage_limit is not None:
        conditions.append(Promotion.used_count < promotion.usage_limit)
    result = session.exec(
        update(Promotion)
        .where(*conditions)
        .values(used_count=Promotion.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PromotionError("Promotion usage limit reached")
    return discount


# -----------------------------------------------------------------
# Checkout
# -----------------------------------------------------------------

def _reserve_stock(session: Session, product: Product, quantity: int):
    result = session.exec(
        update(Product)
        .where(Product.id == product.id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationFailed(f"Insufficient stock for {product.name}")


def _restock(session: Session, kind: str, order_id: int):
    for item in get_order_items(session, kind, order_id):
        if item.product_id is None:
            continue
        session.exec(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock=Product.stock + item.quantity)
            .execution_options(synchronize_session=False)
        )


def place_order(session: Session, buyer: User, kind: str, items: list, promotion_code: str = None,
                pickup_site_id: int = None, delivery_address: str = None):
    """Create a regular or grocery order for a buyer.

    `items` is a list of (product_id, quantity). All products must come from
    one seller and be of the type the order kind carries.
    """
    if buyer.role != Role.buyer.value:
        raise OrderOwnershipError()
    if kind not in KIND_PRODUCT_TYPE:
        raise ValidationFailed(f"Buyers cannot place '{kind}' orders")
    if not items:
        raise ValidationFailed("Order must contain at least one item")

    products = []
    for product_id, quantity in items:
        product = get_product(session, product_id)
        if not product.is_active:
            raise ValidationFailed(f"{product.name} is no longer available")
        if product.product_type != KIND_PRODUCT_TYPE[kind]:
            raise ValidationFailed(f"{product.name} cannot be ordered as a {kind} order")
        products.append((product, quantity))

    sellers = {product.seller_id for product, _ in products}
    if len(sellers) != 1:
        raise ValidationFailed("All items of an order must come from the same seller")
    seller_id = sellers.pop()

    subtotal = Decimal("0")
    for product, quantity in products:
        _reserve_stock(session, product, quantity)
        subtotal += Decimal(str(product.price)) * quantity
    subtotal = float(round_money(subtotal))

    discount = 0.0
    if promotion_code:
        discount = redeem_promotion(session, promotion_code, subtotal)
        promotion_code = promotion_code.upper()

    common = dict(
        order_number=new_order_number(kind),
        user_id=buyer.id,
        seller_id=seller_id,
        subtotal=subtotal,
        discount_amount=discount,
        total_amount=float(round_money(subtotal - discount)),
        promotion_code=promotion_code or None,
    )
    if kind == OrderKind.regular.value:
        if pickup_site_id is None:
            raise ValidationFailed("A pickup site is required")
        site = get_pickup_site(session, pickup_site_id)
        if not site.is_active:
            raise ValidationFailed("Pickup site is not accepting orders")
        order = Order(pickup_site_id=pickup_site_id, **common)
    else:
        if not delivery_address:
            raise ValidationFailed("A delivery address is required")
        order = GroceryOrder(delivery_address=delivery_address, **common)

    session.add(order)
    session.flush()

    for product, quantity in products:
        session.add(OrderItem(
            order_kind=kind,
            order_id=order.id,
            product_id=product.id,
            product_name=product.name,
            quantity=quantity,
            unit_price=product.price,
        ))
    record_event(session, kind, order.id, OrderStatus.pending.value, note="Order placed", actor_user_id=buyer.id)

    notify(session, seller_id, "new_order", "New order",
           f"Order {order.order_number} ({order.total_amount:.2f}) is waiting for you", kind, order.id)
    logger.info("Buyer %s placed %s order %s total %.2f", buyer.id, kind, order.id, order.total_amount)
    return order


# -----------------------------------------------------------------
# Manual (walk-in) orders
# -----------------------------------------------------------------

def create_manual_order(session: Session, manager: Agent, buyer_name: str, buyer_phone: str, items: list,
                        buyer_email: str = None, notes: str = None) -> ManualOrder:
    """`items` is a list of (product_name, unit_price, quantity)."""
    if manager.pickup_site_id is None:
        raise ValidationFailed("You are not attached to a pickup site")

    subtotal = float(round_money(sum(Decimal(str(price)) * qty for _, price, qty in items)))
    order = ManualOrder(
        order_number=new_order_number(OrderKind.manual.value),
        created_by_agent_id=manager.id,
        pickup_site_id=manager.pickup_site_id,
        buyer_name=buyer_name,
        buyer_phone=buyer_phone,
        buyer_email=buyer_email,
        notes=notes,
        subtotal=subtotal,
        total_amount=subtotal,
    )
    session.add(order)
    session.flush()

    for name, price, quantity in items:
        session.add(OrderItem(
            order_kind=OrderKind.manual.value,
            order_id=order.id,
            product_name=name,
            quantity=quantity,
            unit_price=price,
        ))
    record_event(session, OrderKind.manual.value, order.id, OrderStatus.pending.value,
                 note="Walk-in order recorded", actor_user_id=manager.user_id)
    logger.info("PSM %s recorded manual order %s", manager.id, order.id)
    return order


# -----------------------------------------------------------------
# Seller status changes
# -----------------------------------------------------------------

SELLER_TARGETS = {OrderStatus.processing.value, OrderStatus.ready_for_pickup.value, OrderStatus.cancelled.value}


def seller_update_status(session: Session, seller: User, kind: str, order_id: int, target: str, reason: str = None):
    order = get_order(session, kind, order_id)
    if getattr(order, "seller_id", None) != seller.id:
        raise NotFoundError("Order not found")
    if target not in SELLER_TARGETS:
        raise PermissionDenied(f"Sellers cannot set status '{target}'")

    if target == OrderStatus.cancelled.value:
        if order.agent_id is not None:
            raise ConflictError("An agent already holds this order, contact an admin to cancel")
        return cancel_order(session, kind, order_id, seller.id, reason or "Cancelled by seller")

    if (target == OrderStatus.ready_for_pickup.value and REQUIRE_PAYMENT_CONFIRMATION
            and order.payment_status != PaymentStatus.confirmed.value):
        raise ValidationFailed("Payment must be confirmed before the order can be handed over")

    order = transition(session, kind, order_id, target, actor_user_id=seller.id)
    notify(session, order.user_id, "order_status", "Order update",
           f"Order {order.order_number} is now {target.replace('_', ' ')}", kind, order_id)
    return order


# -----------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------

BUYER_CANCELLABLE = {OrderStatus.pending.value, OrderStatus.processing.value}


def cancel_order(session: Session, kind: str, order_id: int, actor_user_id: int, reason: str = None):
    order = get_order(session, kind, order_id)
    if order.status in TERMINAL:
        raise ConflictError(f"Order is already {order.status}")
    previous = order.status

    order = transition(session, kind, order_id, OrderStatus.cancelled.value, actor_user_id=actor_user_id,
                       note=reason, values={"cancel_reason": reason})
    _restock(session, kind, order_id)
    expire_codes(session, kind, order_id)
    reject_pending_for_order(session, kind, order_id, actor_user_id, notes="Order cancelled")
    if previous == OrderStatus.delivered_to_psm.value:
        # The parcel no longer waits at the site
        adjust_site_load(session, order.pickup_site_id, -1)

    buyer_id = getattr(order, "user_id", None)
    notify(session, buyer_id, "order_cancelled", "Order cancelled",
           f"Order {order.order_number} was cancelled" + (f": {reason}" if reason else ""), kind, order_id)
    if order.agent_id is not None:
        refresh_agent_status(session, order.agent_id)
    return order


def buyer_cancel(session: Session, buyer: User, kind: str, order_id: int, reason: str = None):
    order = get_order(session, kind, order_id)
    if getattr(order, "user_id", None) != buyer.id:
        raise NotFoundError("Order not found")
    if order.status not in BUYER_CANCELLABLE:
        raise ConflictError("Order can no longer be cancelled")
    order = cancel_order(session, kind, order_id, buyer.id, reason or "Cancelled by buyer")
    notify(session, order.seller_id, "order_cancelled", "Order cancelled",
           f"Order {order.order_number} was cancelled by the buyer", kind, order_id)
    return order


# -----------------------------------------------------------------
# Ownership
# -----------------------------------------------------------------

def reassign_owner(session: Session, kind: str, order_id: int, user_id: int):
    if kind not in KIND_PRODUCT_TYPE:
        raise ValidationFailed("Only buyer orders have an owner")
    order = get_order(session, kind, order_id)
    user = get_user(session, user_id)
    if user.role != Role.buyer.value:
        raise OrderOwnershipError()
    order.user_id = user.id
    order.updated_at = utcnow()
    session.add(order)
    session.flush()
    logger.info("%s order %s now owned by buyer %s", kind, order_id, user_id)
    return order


def can_view_order(session: Session, user: User, kind: str, order) -> bool:
    if user.role == Role.admin.value:
        return True
    if user.role == Role.buyer.value:
        return getattr(order, "user_id", None) == user.id
    if user.role == Role.seller.value:
        return getattr(order, "seller_id", None) == user.id
    if user.role == Role.agent.value:
        agent = get_agent_by_user_id(session, user.id)
        if agent is None:
            return False
        if order.agent_id == agent.id:
            return True
        if agent.agent_type == AgentType.pickup_site_manager.value:
            return getattr(order, "pickup_site_id", None) == agent.pickup_site_id
    return False


def get_visible_order(session: Session, user: User, kind: str, order_id: int):
    order = get_order(session, kind, order_id)
    if not can_view_order(session, user, kind, order):
        raise NotFoundError("Order not found")
    return order


def order_contacts(session: Session, kind: str, order, viewer: User) -> List[dict]:
    """The other people on an order, each with a WhatsApp link opening a chat about it."""
    if kind == OrderKind.manual.value:
        people = [("buyer", order.buyer_name, order.buyer_phone)]
    else:
        people = []
        for role, user_id in (("seller", order.seller_id), ("buyer", order.user_id)):
            if user_id == viewer.id:
                continue
            user = session.get(User, user_id)
            if user is not None:
                people.append((role, user.name, user.phone))

    text = f"Hello, this is about order {order.order_number}"
    return [
        {"role": role, "name": name, "phone": phone, "whatsapp_url": whatsapp_link(phone, text)}
        for role, name, phone in people
    ]


# -----------------------------------------------------------------
# Payment proofs
# -----------------------------------------------------------------

def submit_payment_proof(session: Session, buyer: User, kind: str, order_id: int,
                         payment_method: str, transaction_id: str, amount: float) -> PaymentProof:
    order = get_order(session, kind, order_id)
    if getattr(order, "user_id", None) != buyer.id:
        raise NotFoundError("Order not found")
    if order.payment_status == PaymentStatus.confirmed.value:
        raise ConflictError("Payment already confirmed")

    proof = PaymentProof(
        order_kind=kind,
        order_id=order_id,
        user_id=buyer.id,
        payment_method=payment_method,
        transaction_id=transaction_id,
        amount=amount,
    )
    session.add(proof)
    order.payment_status = PaymentStatus.proof_submitted.value
    session.add(order)
    session.flush()
    return proof


def list_payment_proofs(session: Session, status: str = None) -> List[PaymentProof]:
    statement = select(PaymentProof)
    if status:
        statement = statement.where(PaymentProof.status == status)
    return list(session.exec(statement.order_by(PaymentProof.created_at)).all())


def review_payment_proof(session: Session, proof_id: int, admin: User, approve: bool) -> PaymentProof:
    proof = session.get(PaymentProof, proof_id)
    if proof is None:
        raise NotFoundError("Payment proof not found")
    if proof.status != ApprovalState.pending.value:
        raise ConflictError(f"Payment proof already {proof.status}")

    proof.status = ApprovalState.approved.value if approve else ApprovalState.rejected.value
    proof.reviewed_by = admin.id
    proof.reviewed_at = utcnow()
    session.add(proof)

    order = get_order(session, proof.order_kind, proof.order_id)
    order.payment_status = PaymentStatus.confirmed.value if approve else PaymentStatus.rejected.value
    session.add(order)
    session.flush()

    notify(session, proof.user_id, "payment_review", "Payment " + ("confirmed" if approve else "rejected"),
           f"Your payment for order {order.order_number} was {'confirmed' if approve else 'rejected'}",
           proof.order_kind, proof.order_id)
    return proof
