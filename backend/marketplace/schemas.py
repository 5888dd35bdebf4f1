# Used for validating and structuring the data the API receives and returns

from pydantic import BaseModel, ConfigDict, EmailStr, Field   # EmailStr helps validate proper email structure
from typing import Optional, List, Literal, Dict
from datetime import datetime

OrderKindName = Literal["regular", "grocery", "manual"]
AgentTypeName = Literal["fast_delivery", "pickup_delivery", "pickup_site_manager"]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)   # Allows returning SQLModel objects directly

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Auth Schemas
# -----------------------------

class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    role: Literal["buyer", "seller"] = "buyer"
    phone: Optional[str] = None
    address: Optional[str] = None


class AgentCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    phone: Optional[str] = None
    agent_type: AgentTypeName
    pickup_site_id: Optional[int] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserRead(ORMModel):
    id: int
    name: str
    email: str
    role: str
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool
    created_at: datetime


class AgentRead(ORMModel):
    id: int
    user_id: int
    agent_type: str
    status: str
    approval_status: str
    rejection_reason: Optional[str] = None
    commission_rate: Optional[float] = None
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    pickup_site_id: Optional[int] = None
    approved_at: Optional[datetime] = None


class AgentProfile(BaseModel):
    user: UserRead
    agent: AgentRead
    active_orders: int


# Everything a client needs to know about who is logged in. Versioned so a
# client holding an older shape can tell it must log in again.
class SessionContext(BaseModel):
    version: int
    storage_key: str
    user_id: int
    name: str
    email: str
    role: str
    agent_id: Optional[int] = None
    agent_type: Optional[str] = None
    approval_status: Optional[str] = None
    expires_at: datetime


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session: SessionContext


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class OTPVerifyRequest(BaseModel):
    email: EmailStr
    otp: str


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str
    new_password: str = Field(min_length=6)

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Catalog Schemas
# -----------------------------

class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: float = Field(gt=0)
    stock: int = Field(default=0, ge=0)
    product_type: Literal["physical", "grocery"] = "physical"


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, gt=0)
    stock: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class ProductRead(ORMModel):
    id: int
    seller_id: int
    name: str
    description: Optional[str] = None
    price: float
    stock: int
    product_type: str
    is_active: bool


class PickupSiteCreate(BaseModel):
    name: str
    address: str
    city: Optional[str] = None
    contact_phone: Optional[str] = None
    capacity: int = Field(default=100, gt=0)


class PickupSiteRead(ORMModel):
    id: int
    name: str
    address: str
    city: Optional[str] = None
    contact_phone: Optional[str] = None
    capacity: int
    current_load: int
    is_active: bool

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Order Schemas
# -----------------------------

class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class RegularOrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(min_length=1)
    pickup_site_id: int
    promotion_code: Optional[str] = None


class GroceryOrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(min_length=1)
    delivery_address: str = Field(min_length=1)
    promotion_code: Optional[str] = None


class OrderItemRead(ORMModel):
    id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    unit_price: float


# One shape for all three order tables; fields a kind lacks stay None
class OrderRead(ORMModel):
    kind: OrderKindName
    id: int
    order_number: str
    status: str
    subtotal: float
    discount_amount: float
    total_amount: float
    promotion_code: Optional[str] = None
    payment_status: str
    agent_id: Optional[int] = None

    user_id: Optional[int] = None
    seller_id: Optional[int] = None
    pickup_site_id: Optional[int] = None
    delivery_address: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_phone: Optional[str] = None

    seller_payout_status: Optional[str] = None
    seller_payout_amount: Optional[float] = None
    fda_commission_status: Optional[str] = None
    fda_commission_amount: Optional[float] = None
    pda_commission_status: Optional[str] = None
    pda_commission_amount: Optional[float] = None
    psm_commission_status: Optional[str] = None
    psm_commission_amount: Optional[float] = None

    created_at: datetime
    updated_at: datetime
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    deposited_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @classmethod
    def of(cls, kind: str, order) -> "OrderRead":
        return cls.model_validate({**order.model_dump(), "kind": kind})


class TrackingEventRead(ORMModel):
    id: int
    status: str
    note: Optional[str] = None
    agent_id: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    created_at: datetime


class AgentLocation(BaseModel):
    agent_id: int
    lat: Optional[float] = None
    lng: Optional[float] = None
    updated_at: Optional[datetime] = None


class TrackingRead(BaseModel):
    order: OrderRead
    events: List[TrackingEventRead]
    agent_location: Optional[AgentLocation] = None


class ContactLink(BaseModel):
    role: str
    name: str
    phone: Optional[str] = None
    whatsapp_url: Optional[str] = None


class OrderDetail(BaseModel):
    order: OrderRead
    items: List[OrderItemRead]
    tracking: List[TrackingEventRead]
    contacts: List[ContactLink] = []


class StatusUpdate(BaseModel):
    status: Literal["processing", "ready_for_pickup", "cancelled"]
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CodeSubmit(BaseModel):
    code: str = Field(min_length=4, max_length=12)


class CodeIssued(BaseModel):
    code_type: str
    expires_at: datetime
    detail: str
    code: Optional[str] = None   # only present when the caller is the code holder


class HeldCode(ORMModel):
    order_kind: str
    order_id: int
    code_type: str
    code_value: str
    expires_at: datetime

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Agent Schemas
# -----------------------------

class AgentStatusUpdate(BaseModel):
    status: Literal["available", "offline"]


class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class AgentReview(BaseModel):
    reason: Optional[str] = None
    pickup_site_id: Optional[int] = None
    commission_rate: Optional[float] = Field(default=None, ge=0, le=100)


class AssignAgentRequest(BaseModel):
    agent_id: int


class EarningsSummary(BaseModel):
    agent_id: int
    currency: str
    pending: float
    approved: float
    rejected: float
    approvals: List["ApprovalRead"]

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Pickup Site (manual orders)
# -----------------------------

class ManualItemIn(BaseModel):
    product_name: str = Field(min_length=1)
    unit_price: float = Field(gt=0)
    quantity: int = Field(gt=0)


class ManualOrderCreate(BaseModel):
    buyer_name: str = Field(min_length=1)
    buyer_phone: str = Field(min_length=3)
    buyer_email: Optional[EmailStr] = None
    notes: Optional[str] = None
    items: List[ManualItemIn] = Field(min_length=1)


class ManualReceipt(BaseModel):
    order: OrderRead
    items: List[OrderItemRead]
    pickup_site: Optional[PickupSiteRead] = None
    collection_code: Optional[str] = None
    collection_code_expires_at: Optional[datetime] = None
    currency: str

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Approvals / Payments / Promotions
# -----------------------------

class ApprovalRead(ORMModel):
    id: int
    approval_type: str
    order_kind: str
    order_id: int
    beneficiary_user_id: Optional[int] = None
    amount: float
    status: str
    requested_by: Optional[int] = None
    reviewed_by: Optional[int] = None
    review_notes: Optional[str] = None
    created_at: datetime
    reviewed_at: Optional[datetime] = None


class ReviewRequest(BaseModel):
    notes: Optional[str] = None


class PaymentProofCreate(BaseModel):
    payment_method: str
    transaction_id: str = Field(min_length=1)
    amount: float = Field(gt=0)


class PaymentProofRead(ORMModel):
    id: int
    order_kind: str
    order_id: int
    user_id: int
    payment_method: str
    transaction_id: str
    amount: float
    status: str
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime


class PromotionCreate(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    description: Optional[str] = None
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: float = Field(gt=0)
    min_order_amount: float = Field(default=0.0, ge=0)
    usage_limit: Optional[int] = Field(default=None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True


class PromotionUpdate(BaseModel):
    description: Optional[str] = None
    discount_value: Optional[float] = Field(default=None, gt=0)
    min_order_amount: Optional[float] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None


class PromotionRead(ORMModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    min_order_amount: float
    usage_limit: Optional[int] = None
    used_count: int
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool


class PromotionQuote(BaseModel):
    code: str
    subtotal: float
    discount_amount: float
    total: float

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Messages / Notifications
# -----------------------------

class MessageCreate(BaseModel):
    recipient_id: int
    subject: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    order_kind: Optional[OrderKindName] = None
    order_id: Optional[int] = None


class MessageRead(ORMModel):
    id: int
    sender_id: int
    recipient_id: int
    subject: str
    content: str
    order_kind: Optional[str] = None
    order_id: Optional[int] = None
    is_read: bool
    created_at: datetime


class NotificationRead(ORMModel):
    id: int
    type: str
    title: str
    message: str
    order_kind: Optional[str] = None
    order_id: Optional[int] = None
    is_read: bool
    created_at: datetime


class UnreadCount(BaseModel):
    count: int

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Admin
# -----------------------------

class UserStatusUpdate(BaseModel):
    is_active: bool


class OwnerUpdate(BaseModel):
    user_id: int


class ProblematicOrder(BaseModel):
    order_kind: str
    order_id: int
    order_number: str
    user_id: int
    user_role: str


class HealthRead(BaseModel):
    status: str
    database: str
    errors: Dict[str, int]


EarningsSummary.model_rebuild()
