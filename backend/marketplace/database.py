# Defining functions to create tables and talk to the database
import os
import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import func
from sqlmodel import SQLModel, create_engine, Session, select, col, or_

from marketplace.config import DATABASE_URL, SQL_ECHO, DATA_DIR
from marketplace.db_models import (
    User,
    Agent,
    PickupSite,
    Product,
    Promotion,
    Message,
    Notification,
    PasswordReset,
    OrderItem,
    TrackingEvent,
    ORDER_MODELS,
    Role,
    AgentType,
    ApprovalState,
    ProductType,
    utcnow,
)
from marketplace.errors import NotFoundError, ValidationFailed, ConflictError

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------
# Engine
# -----------------------------------------------------------------

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    if not os.path.exists(DATA_DIR):
        os.makedirs(DATA_DIR)
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(DATABASE_URL, echo=SQL_ECHO, connect_args=connect_args)


def new_session() -> Session:
    # Objects stay readable after commit so routes can return them
    return Session(engine, expire_on_commit=False)


# -----------------------------------------------------------------
# Creating Tables
# -----------------------------------------------------------------

def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


# -----------------------------------------------------------------
# User Functions
# -----------------------------------------------------------------

def add_user(session: Session, name: str, email: str, hashed_password: str, role: str,
             phone: str = None, address: str = None) -> User:
    if role not in {r.value for r in Role}:
        raise ValidationFailed(f"Unknown role '{role}'")
    if get_user_by_email(session, email):
        raise ConflictError("Email Already Registered")

    user = User(
        name=name,
        email=email.lower(),
        hashed_password=hashed_password,
        role=role,
        phone=phone,
        address=address,
    )
    session.add(user)
    session.flush()
    logger.info("Created %s account %s", role, user.id)
    return user


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    statement = select(User).where(User.email == email.lower())
    return session.exec(statement).first()


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def set_user_active(session: Session, user_id: int, is_active: bool) -> User:
    user = get_user(session, user_id)
    user.is_active = is_active
    session.add(user)
    return user


# -----------------------------------------------------------------
# Agent Functions
# -----------------------------------------------------------------

def add_agent(session: Session, user: User, agent_type: str, pickup_site_id: int = None) -> Agent:
    if agent_type not in {t.value for t in AgentType}:
        raise ValidationFailed(f"Unknown agent type '{agent_type}'")
    if agent_type == AgentType.pickup_site_manager.value and pickup_site_id is not None:
        get_pickup_site(session, pickup_site_id)

    agent = Agent(user_id=user.id, agent_type=agent_type, pickup_site_id=pickup_site_id)
    session.add(agent)
    session.flush()
    return agent


def get_agent(session: Session, agent_id: int) -> Agent:
    agent = session.get(Agent, agent_id)
    if agent is None:
        raise NotFoundError("Agent not found")
    return agent


def get_agent_by_user_id(session: Session, user_id: int) -> Optional[Agent]:
    return session.exec(select(Agent).where(Agent.user_id == user_id)).first()


def list_agents(session: Session, approval_status: str = None, agent_type: str = None) -> List[Agent]:
    statement = select(Agent)
    if approval_status:
        statement = statement.where(Agent.approval_status == approval_status)
    if agent_type:
        statement = statement.where(Agent.agent_type == agent_type)
    return list(session.exec(statement.order_by(Agent.created_at)).all())


def review_agent(session: Session, agent_id: int, approve: bool, reason: str = None,
                 pickup_site_id: int = None) -> Agent:
    agent = get_agent(session, agent_id)

    if approve:
        if pickup_site_id is not None:
            get_pickup_site(session, pickup_site_id)
            agent.pickup_site_id = pickup_site_id
        if agent.agent_type == AgentType.pickup_site_manager.value and agent.pickup_site_id is None:
            raise ValidationFailed("A pickup site manager needs a pickup site before approval")
        agent.approval_status = ApprovalState.approved.value
        agent.approved_at = utcnow()
        agent.rejection_reason = None
    else:
        agent.approval_status = ApprovalState.rejected.value
        agent.rejection_reason = reason

    session.add(agent)
    logger.info("Agent %s %s", agent.id, agent.approval_status)
    return agent


# -----------------------------------------------------------------
# Pickup Site Functions
# -----------------------------------------------------------------

def add_pickup_site(session: Session, **fields) -> PickupSite:
    site = PickupSite(**fields)
    session.add(site)
    session.flush()
    return site


def get_pickup_site(session: Session, site_id: int) -> PickupSite:
    site = session.get(PickupSite, site_id)
    if site is None:
        raise NotFoundError("Pickup site not found")
    return site


def list_pickup_sites(session: Session, only_active: bool = True) -> List[PickupSite]:
    statement = select(PickupSite)
    if only_active:
        statement = statement.where(PickupSite.is_active == True)  # noqa: E712
    return list(session.exec(statement.order_by(PickupSite.name)).all())


# -----------------------------------------------------------------
# Product Functions
# -----------------------------------------------------------------

def add_product(session: Session, seller_id: int, name: str, price: float, stock: int = 0,
                product_type: str = ProductType.physical.value, description: str = None) -> Product:
    if product_type not in {t.value for t in ProductType}:
        raise ValidationFailed(f"Unknown product type '{product_type}'")

    product = Product(
        seller_id=seller_id,
        name=name,
        description=description,
        price=round(price, 2),
        stock=stock,
        product_type=product_type,
    )
    session.add(product)
    session.flush()
    return product


def get_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def update_product(session: Session, product: Product, changes: dict) -> Product:
    for key, value in changes.items():
        setattr(product, key, value)
    session.add(product)
    return product


def search_products(session: Session, query: str = None, product_type: str = None,
                    seller_id: int = None, include_inactive: bool = False) -> List[Product]:
    statement = select(Product)
    if not include_inactive:
        statement = statement.where(Product.is_active == True)  # noqa: E712
    if query:
        statement = statement.where(or_(
            col(Product.name).ilike(f"%{query}%"),
            col(Product.description).ilike(f"%{query}%"),
        ))
    if product_type:
        statement = statement.where(Product.product_type == product_type)
    if seller_id:
        statement = statement.where(Product.seller_id == seller_id)
    return list(session.exec(statement.order_by(Product.id)).all())


# -----------------------------------------------------------------
# Order Lookups
# -----------------------------------------------------------------

def order_model(kind: str):
    try:
        return ORDER_MODELS[kind]
    except KeyError:
        raise NotFoundError(f"Unknown order kind '{kind}'")


def get_order(session: Session, kind: str, order_id: int):
    order = session.get(order_model(kind), order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_items(session: Session, kind: str, order_id: int) -> List[OrderItem]:
    statement = select(OrderItem).where(OrderItem.order_kind == kind, OrderItem.order_id == order_id)
    return list(session.exec(statement.order_by(OrderItem.id)).all())


def get_tracking(session: Session, kind: str, order_id: int) -> List[TrackingEvent]:
    statement = (
        select(TrackingEvent)
        .where(TrackingEvent.order_kind == kind, TrackingEvent.order_id == order_id)
        .order_by(TrackingEvent.created_at, TrackingEvent.id)
    )
    return list(session.exec(statement).all())


def list_orders(session: Session, kind: str, **filters) -> list:
    model = order_model(kind)
    statement = select(model)
    for field, value in filters.items():
        if value is not None:
            statement = statement.where(getattr(model, field) == value)
    return list(session.exec(statement.order_by(col(model.created_at).desc())).all())


def problematic_orders(session: Session) -> List[dict]:
    """Orders whose owner is not a buyer (should never exist; kept as an audit report)."""
    rows = []
    for kind in ("regular", "grocery"):
        model = order_model(kind)
        statement = (
            select(model, User)
            .join(User, User.id == model.user_id)
            .where(User.role != Role.buyer.value)
        )
        for order, user in session.exec(statement).all():
            rows.append({
                "order_kind": kind,
                "order_id": order.id,
                "order_number": order.order_number,
                "user_id": user.id,
                "user_role": user.role,
            })
    return rows


# -----------------------------------------------------------------
# Promotion Functions
# -----------------------------------------------------------------

def add_promotion(session: Session, **fields) -> Promotion:
    fields["code"] = fields["code"].upper()
    if session.exec(select(Promotion).where(Promotion.code == fields["code"])).first():
        raise ConflictError("Promotion code already exists")
    promotion = Promotion(**fields)
    session.add(promotion)
    session.flush()
    return promotion


def get_promotion(session: Session, promotion_id: int) -> Promotion:
    promotion = session.get(Promotion, promotion_id)
    if promotion is None:
        raise NotFoundError("Promotion not found")
    return promotion


def get_promotion_by_code(session: Session, code: str) -> Optional[Promotion]:
    return session.exec(select(Promotion).where(Promotion.code == code.upper())).first()


def list_promotions(session: Session) -> List[Promotion]:
    return list(session.exec(select(Promotion).order_by(col(Promotion.created_at).desc())).all())


# -----------------------------------------------------------------
# Message Functions
# -----------------------------------------------------------------

def add_message(session: Session, sender_id: int, recipient_id: int, subject: str, content: str,
                order_kind: str = None, order_id: int = None) -> Message:
    get_user(session, recipient_id)
    message = Message(
        sender_id=sender_id,
        recipient_id=recipient_id,
        subject=subject,
        content=content,
        order_kind=order_kind,
        order_id=order_id,
    )
    session.add(message)
    session.flush()
    return message


def list_messages(session: Session, user_id: int, order_kind: str = None, order_id: int = None) -> List[Message]:
    statement = select(Message).where(or_(Message.sender_id == user_id, Message.recipient_id == user_id))
    if order_id is not None:
        statement = statement.where(Message.order_id == order_id)
        if order_kind:
            statement = statement.where(Message.order_kind == order_kind)
    return list(session.exec(statement.order_by(col(Message.created_at).desc(), col(Message.id).desc())).all())


def get_message_for(session: Session, message_id: int, user_id: int) -> Message:
    message = session.get(Message, message_id)
    if message is None or user_id not in (message.sender_id, message.recipient_id):
        raise NotFoundError("Message not found")
    return message


def count_unread_messages(session: Session, user_id: int) -> int:
    statement = select(func.count()).select_from(Message).where(
        Message.recipient_id == user_id, Message.is_read == False  # noqa: E712
    )
    return session.exec(statement).one()


# -----------------------------------------------------------------
# Notification Functions
# -----------------------------------------------------------------

def list_notifications(session: Session, user_id: int, unread_only: bool = False) -> List[Notification]:
    statement = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        statement = statement.where(Notification.is_read == False)  # noqa: E712
    return list(session.exec(statement.order_by(col(Notification.created_at).desc(), col(Notification.id).desc())).all())


def count_unread_notifications(session: Session, user_id: int) -> int:
    statement = select(func.count()).select_from(Notification).where(
        Notification.user_id == user_id, Notification.is_read == False  # noqa: E712
    )
    return session.exec(statement).one()


def mark_notification_read(session: Session, notification_id: int, user_id: int) -> Notification:
    notification = session.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFoundError("Notification not found")
    notification.is_read = True
    session.add(notification)
    return notification


# -----------------------------------------------------------------
# Password Reset Functions
# -----------------------------------------------------------------

def save_reset_otp(session: Session, email: str, otp: str, expires_at: datetime):
    for old in session.exec(select(PasswordReset).where(PasswordReset.email == email.lower())).all():
        session.delete(old)
    session.add(PasswordReset(email=email.lower(), otp=otp, expires_at=expires_at))


def get_reset_entry(session: Session, email: str, otp: str) -> Optional[PasswordReset]:
    statement = select(PasswordReset).where(PasswordReset.email == email.lower(), PasswordReset.otp == otp)
    return session.exec(statement).first()
