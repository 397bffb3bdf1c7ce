"""
Database Schemas

MongoDB collection schemas as Pydantic models. These schemas are used for
data validation before documents are written.

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- DigitalProduct -> "digitalproduct" collection
- Chat -> "chat" collection

Embedded sub-documents (product files, purchases, chat messages) carry
their own ObjectId under `_id` and have no collection of their own.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from database import utcnow


class Category(str, Enum):
    course = "Course"
    software = "Software"
    templates = "Templates"
    ebook = "E-book"
    audio = "Audio"
    video = "Video"


class ProductType(str, Enum):
    digital = "digital"
    saas = "saas"
    service = "service"


class PurchaseStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"
    disputed = "disputed"


class Plan(str, Enum):
    free = "free"
    starter = "starter"
    pro = "pro"
    empire = "empire"


class MessageRole(str, Enum):
    user = "user"
    assistant = "assistant"


class PayoutStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    paid = "paid"
    failed = "failed"
    cancelled = "cancelled"


class EarningStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    paid = "paid"
    disputed = "disputed"
    cancelled = "cancelled"


class EarningSource(str, Enum):
    subscription_purchase = "subscription_purchase"
    subscription_renewal = "subscription_renewal"


class _Document(BaseModel):
    model_config = ConfigDict(
        arbitrary_types_allowed=True, populate_by_name=True, use_enum_values=True, validate_default=True
    )


class UserSubscription(_Document):
    plan: Plan = Field(Plan.free, description="Current plan")
    status: str = Field("inactive", description="active | trialing | inactive")
    is_active: bool = Field(False, description="Whether paid access is active")
    is_gifted: bool = Field(False, description="Assigned by an admin, excluded from revenue")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    days_remaining: int = 0


class User(_Document):
    """
    Users collection schema
    Collection name: "user" (lowercase of class name)
    """
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Unique email address")
    password_hash: Optional[str] = Field(None, description="PBKDF2 hash, None for checkout-created buyers")
    salt: Optional[str] = Field(None, description="Password salt")
    role: str = Field("user", description="user | admin")
    subscription: UserSubscription = Field(default_factory=UserSubscription)
    stripe_connect_account_id: Optional[str] = Field(None, description="Connected account receiving payouts")
    referral_code: Optional[str] = Field(None, description="Code other users sign up with")
    referred_by: Optional[ObjectId] = Field(None, description="User whose referral code was used at signup")
    is_deleted: bool = False
    last_login: Optional[datetime] = None


class Session(_Document):
    user_id: str
    token: str


class ProductFile(_Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    name: str = Field(..., description="Stored file name")
    original_name: str = Field(..., description="Name the file was uploaded with")
    type: str = Field(..., description="Extension without the dot")
    size: str = Field(..., description="Human readable size")
    path: str = Field(..., description="Server filesystem path")
    mime_type: str
    uploaded_at: datetime = Field(default_factory=utcnow)


class Purchase(_Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    user: ObjectId = Field(..., description="Buyer user id")
    email: str
    name: str
    amount: float = Field(..., ge=0, description="Amount paid in dollars")
    stripe_session_id: str
    stripe_payment_intent_id: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.pending
    purchased_at: datetime = Field(default_factory=utcnow)


class DigitalProduct(_Document):
    """
    Digital products collection schema
    Collection name: "digitalproduct"
    """
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    category: Category = Category.course
    price: float = Field(..., ge=0, le=99999, description="Price in dollars")
    type: ProductType = ProductType.digital
    published: bool = False
    files: List[ProductFile] = Field(default_factory=list)
    purchases: List[Purchase] = Field(default_factory=list)
    sales: int = 0
    revenue: float = 0
    creator: ObjectId
    slug: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    views: int = 0
    last_viewed_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None


class ChatMessage(_Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    role: MessageRole
    content: str = Field(..., max_length=10000)
    timestamp: datetime = Field(default_factory=utcnow)


class Chat(_Document):
    """Chat conversations, one document per conversation"""
    user: ObjectId
    title: Optional[str] = Field(None, description="Set once from the first message")
    messages: List[ChatMessage] = Field(default_factory=list)
    message_count: int = 0
    last_activity: datetime = Field(default_factory=utcnow)


class Subscription(_Document):
    user: ObjectId
    plan: Plan
    billing_cycle: str = Field("monthly", description="monthly | yearly")
    amount: int = Field(..., ge=0, description="Amount in cents")
    status: str = Field("active", description="active | trialing | cancelled")
    current_period_start: datetime
    current_period_end: datetime
    is_gifted: bool = False
    gifted_by: Optional[ObjectId] = None
    gifted_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None


class PayoutFees(_Document):
    stripe_fee: int = 0
    platform_fee: int = 0
    total: int = 0


class Payout(_Document):
    user: ObjectId
    amount: int = Field(..., ge=0, description="Amount in cents")
    currency: str = "USD"
    method: str = Field("standard", description="standard | instant")
    status: PayoutStatus = PayoutStatus.pending
    stripe_connect_account_id: str
    stripe_transfer_id: Optional[str] = None
    fees: PayoutFees = Field(default_factory=PayoutFees)
    net_amount: int = 0
    requested_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_message: Optional[str] = None
    admin_notes: Optional[str] = None
    processed_by: Optional[ObjectId] = None
    earnings: List[ObjectId] = Field(default_factory=list, description="Earnings reserved by this payout")


class Earning(_Document):
    """
    Referral commissions, one document per commissionable subscription charge
    Collection name: "earning"
    """
    user: ObjectId = Field(..., description="Referrer receiving the commission")
    referred_user: ObjectId
    source: EarningSource
    subscription: Optional[ObjectId] = None
    gross_amount: int = Field(..., ge=0, description="Charged amount in cents")
    commission_rate: float
    commission_amount: int = Field(..., ge=0, description="Commission in cents")
    currency: str = "USD"
    status: EarningStatus = EarningStatus.pending
    payout: Optional[ObjectId] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[ObjectId] = None
    paid_at: Optional[datetime] = None
    stripe_transfer_id: Optional[str] = None
    split_from: Optional[ObjectId] = Field(None, description="Earning this remainder was split off by a partial payout")
    description: Optional[str] = None
    notes: Optional[str] = None


class Notification(_Document):
    user: ObjectId
    type: str = Field(..., description="payment_successful | payment_failed | subscription_update | ...")
    title: str = Field(..., max_length=100)
    message: str = Field(..., max_length=500)
    data: dict = Field(default_factory=dict)
    is_read: bool = False


def to_document(model: BaseModel) -> dict:
    """Dump a schema for insertion, keeping ObjectIds and `_id` aliases."""
    return model.model_dump(by_alias=True)
