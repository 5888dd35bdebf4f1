# Database Models

# Here, we define all the database tables, attributes to each

from enum import Enum
from typing import Optional   # To allow fields to be NULL
from datetime import datetime, timezone # Default timestamps

from sqlalchemy import DateTime, UniqueConstraint, event, select as sa_select
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field

from marketplace.errors import OrderOwnershipError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Always written and read back as UTC. SQLite keeps no offset, so naive rows are tagged on the way out.
class UTCDateTime(TypeDecorator):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


# --------------------------------------------------------------------------------------------------------------------
# Enumerations
# --------------------------------------------------------------------------------------------------------------------

class Role(str, Enum):
    buyer = "buyer"
    seller = "seller"
    agent = "agent"
    admin = "admin"


class AgentType(str, Enum):
    fast_delivery = "fast_delivery"              # FDA - home delivery of groceries
    pickup_delivery = "pickup_delivery"          # PDA - seller to pickup site
    pickup_site_manager = "pickup_site_manager"  # PSM - runs a pickup site


class AgentStatus(str, Enum):
    offline = "offline"
    available = "available"
    active = "active"  # currently holding orders


class ApprovalState(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class OrderKind(str, Enum):
    regular = "regular"
    grocery = "grocery"
    manual = "manual"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    ready_for_pickup = "ready_for_pickup"
    assigned = "assigned"
    picked_up = "picked_up"
    en_route = "en_route"
    delivered_to_psm = "delivered_to_psm"
    delivered = "delivered"
    completed = "completed"
    cancelled = "cancelled"


class ProductType(str, Enum):
    physical = "physical"
    grocery = "grocery"


class CodeType(str, Enum):
    seller_pickup = "seller_pickup"
    buyer_delivery = "buyer_delivery"
    psm_deposit = "psm_deposit"
    buyer_collection = "buyer_collection"


class CodeStatus(str, Enum):
    active = "active"
    used = "used"
    expired = "expired"
    locked = "locked"


class ApprovalType(str, Enum):
    seller_payout = "SELLER_PAYOUT"
    fda_commission = "FDA_COMMISSION"
    pda_commission = "PDA_COMMISSION"
    psm_commission = "PSM_COMMISSION"


class PayoutStatus(str, Enum):
    not_due = "not_due"
    awaiting_admin_approval = "awaiting_admin_approval"
    released = "released"
    rejected = "rejected"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    proof_submitted = "proof_submitted"
    confirmed = "confirmed"
    rejected = "rejected"


# --------------------------------------------------------------------------------------------------------------------
# User Table Definition
# --------------------------------------------------------------------------------------------------------------------

class User(SQLModel, table=True):

    # User ID -- Primary key (Auto-generated)
    id: Optional[int] = Field(default=None, primary_key=True)

    name: str
    email: str = Field(index=True, unique=True)
    hashed_password: str  # Salted hash, never the raw password
    role: str = Field(default=Role.buyer.value, index=True)

    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Agent Table Definition (extends a User with role 'agent')
# --------------------------------------------------------------------------------------------------------------------

class Agent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True, index=True)

    agent_type: str = Field(index=True)
    status: str = Field(default=AgentStatus.offline.value)
    approval_status: str = Field(default=ApprovalState.pending.value, index=True)
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Percentage of the platform profit, overrides the sub-type default
    commission_rate: Optional[float] = None

    # Last known position
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    location_updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Only for pickup site managers
    pickup_site_id: Optional[int] = Field(default=None, foreign_key="pickupsite.id")

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Pickup Site Table Definition
# --------------------------------------------------------------------------------------------------------------------

class PickupSite(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    address: str
    city: Optional[str] = None
    contact_phone: Optional[str] = None

    capacity: int = 100
    current_load: int = 0  # parcels waiting for collection
    is_active: bool = True

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Product Table Definition
# --------------------------------------------------------------------------------------------------------------------

class Product(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    seller_id: int = Field(foreign_key="user.id", index=True)

    name: str = Field(index=True)
    description: Optional[str] = None
    price: float
    stock: int = 0
    product_type: str = Field(default=ProductType.physical.value, index=True)
    is_active: bool = True

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Orders
# --------------------------------------------------------------------------------------------------------------------

# Columns shared by the three order tables (not a table by itself)
class OrderBase(SQLModel):

    order_number: str = Field(index=True, unique=True)
    status: str = Field(default=OrderStatus.pending.value, index=True)

    # Money (2 decimal places, in CURRENCY)
    subtotal: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0
    promotion_code: Optional[str] = None
    payment_status: str = Field(default=PaymentStatus.unpaid.value)

    # Delivery agent holding the order, NULL until someone accepts it
    agent_id: Optional[int] = Field(default=None, foreign_key="agent.id", index=True)

    # Status timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)
    processing_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    ready_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    assigned_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    picked_up_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    en_route_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    deposited_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    delivered_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancel_reason: Optional[str] = None


# Physical goods: seller -> PDA -> pickup site -> buyer
class Order(OrderBase, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)   # must be a buyer
    seller_id: int = Field(foreign_key="user.id", index=True)
    pickup_site_id: Optional[int] = Field(default=None, foreign_key="pickupsite.id")
    psm_agent_id: Optional[int] = Field(default=None, foreign_key="agent.id")

    seller_payout_status: str = Field(default=PayoutStatus.not_due.value)
    seller_payout_amount: Optional[float] = None
    pda_commission_status: str = Field(default=PayoutStatus.not_due.value)
    pda_commission_amount: Optional[float] = None
    psm_commission_status: str = Field(default=PayoutStatus.not_due.value)
    psm_commission_amount: Optional[float] = None


# Groceries: seller -> FDA -> buyer's door
class GroceryOrder(OrderBase, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)   # must be a buyer
    seller_id: int = Field(foreign_key="user.id", index=True)
    delivery_address: str

    seller_payout_status: str = Field(default=PayoutStatus.not_due.value)
    seller_payout_amount: Optional[float] = None
    fda_commission_status: str = Field(default=PayoutStatus.not_due.value)
    fda_commission_amount: Optional[float] = None


# Walk-in orders recorded by a pickup site manager
class ManualOrder(OrderBase, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    created_by_agent_id: int = Field(foreign_key="agent.id", index=True)
    pickup_site_id: Optional[int] = Field(default=None, foreign_key="pickupsite.id")

    buyer_name: str
    buyer_phone: str
    buyer_email: Optional[str] = None
    notes: Optional[str] = None

    psm_commission_status: str = Field(default=PayoutStatus.not_due.value)
    psm_commission_amount: Optional[float] = None


ORDER_MODELS = {
    OrderKind.regular.value: Order,
    OrderKind.grocery.value: GroceryOrder,
    OrderKind.manual.value: ManualOrder,
}


# Line items for any kind of order. Written once at placement, never updated.
class OrderItem(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_kind: str = Field(index=True)
    order_id: int = Field(index=True)

    product_id: Optional[int] = Field(default=None, foreign_key="product.id")  # NULL for manual items
    product_name: str
    quantity: int
    unit_price: float


# Append-only delivery history
class TrackingEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_kind: str = Field(index=True)
    order_id: int = Field(index=True)

    status: str
    note: Optional[str] = None
    agent_id: Optional[int] = Field(default=None, foreign_key="agent.id")
    actor_user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    lat: Optional[float] = None
    lng: Optional[float] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Handover Codes
# --------------------------------------------------------------------------------------------------------------------

class ConfirmationCode(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_kind: str = Field(index=True)
    order_id: int = Field(index=True)
    code_type: str

    code_value: str
    holder_user_id: Optional[int] = Field(default=None, foreign_key="user.id")  # who may see it
    status: str = Field(default=CodeStatus.active.value, index=True)
    attempts: int = 0

    expires_at: datetime = Field(sa_type=UTCDateTime)
    used_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Admin Approvals (payouts and commissions)
# --------------------------------------------------------------------------------------------------------------------

class AdminApproval(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("order_kind", "order_id", "approval_type", name="uq_approval_per_order"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    approval_type: str = Field(index=True)
    order_kind: str
    order_id: int = Field(index=True)

    beneficiary_user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    amount: float
    status: str = Field(default=ApprovalState.pending.value, index=True)

    requested_by: Optional[int] = Field(default=None, foreign_key="user.id")
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    review_notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


# --------------------------------------------------------------------------------------------------------------------
# Promotions
# --------------------------------------------------------------------------------------------------------------------

class Promotion(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    description: Optional[str] = None

    discount_type: str = "percentage"  # or "fixed"
    discount_value: float
    min_order_amount: float = 0.0

    usage_limit: Optional[int] = None  # NULL = unlimited
    used_count: int = 0

    valid_from: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    valid_until: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    is_active: bool = True

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Payment Proofs
# --------------------------------------------------------------------------------------------------------------------

class PaymentProof(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_kind: str
    order_id: int = Field(index=True)
    user_id: int = Field(foreign_key="user.id")

    payment_method: str  # e.g. mobile_money, bank_transfer
    transaction_id: str
    amount: float
    status: str = Field(default=ApprovalState.pending.value, index=True)

    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Messages & Notifications
# --------------------------------------------------------------------------------------------------------------------

class Message(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    sender_id: int = Field(foreign_key="user.id", index=True)
    recipient_id: int = Field(foreign_key="user.id", index=True)

    subject: str
    content: str
    order_kind: Optional[str] = None
    order_id: Optional[int] = None
    is_read: bool = False

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


class Notification(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    type: str
    title: str
    message: str
    order_kind: Optional[str] = None
    order_id: Optional[int] = None
    is_read: bool = False

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Password Reset Table Definition
# --------------------------------------------------------------------------------------------------------------------

class PasswordReset(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True)
    otp: str
    expires_at: datetime = Field(sa_type=UTCDateTime)


# --------------------------------------------------------------------------------------------------------------------
# Ownership check: buyer-facing orders must belong to a buyer
# --------------------------------------------------------------------------------------------------------------------

def _check_order_owner(mapper, connection, target):
    role = connection.execute(
        sa_select(User.__table__.c.role).where(User.__table__.c.id == target.user_id)
    ).scalar()
    if role != Role.buyer.value:
        raise OrderOwnershipError()


for _model in (Order, GroceryOrder):
    event.listen(_model, "before_insert", _check_order_owner)
    event.listen(_model, "before_update", _check_order_owner)
