import enum
import uuid
from decimal import Decimal
from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, Text, Uuid
from uuid6 import uuid7
from datetime import datetime
from typing import Optional
from sqlmodel import Column, SQLModel, Field, String
from storefront.common.utils import now


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    # subject id issued by the identity provider
    user_id: str = Field(sa_column=Column(String(64), primary_key=True))
    role: str = Field(default="customer", sa_column=Column(String(32), nullable=False, server_default="customer"))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

# --------------------------------------------------------------------------------------------

class OrderStatus(str, enum.Enum):
    CREATED = "created"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

class PaymentMethod(str, enum.Enum):
    UPI = "upi"
    CARD = "card"
    COD = "cod"


# User --> Orders (1:many)
# fulfillment `status` and gateway controlled `payment_status` move independently
class Orders(SQLModel, table=True):
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid, unique=True, index=True, nullable=False))
    order_number: str = Field(sa_column=Column(String(64), nullable=False, index=True))  # display / search only
    user_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    status: str = Field(default=OrderStatus.CREATED.value, sa_column=Column(String(32), nullable=False, index=True))
    payment_status: str = Field(default=PaymentStatus.CREATED.value, sa_column=Column(String(32), nullable=False, index=True))
    amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))  # rupees
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    payment_method: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    gateway_order_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    # idempotency anchor , at most one order per gateway payment
    gateway_payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    gateway_signature: Optional[str] = Field(default=None, sa_column=Column(String(256), nullable=True))  # audit only
    # snapshot of the delivery address at purchase time , not a reference to the address book
    shipping_address: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    __table_args__ = (
        Index("uq_orders_gateway_payment_id", "gateway_payment_id", unique=True),
    )


# Order --> OrderItems (1:many)
# name/price snapshots so later catalog edits never rewrite historical orders
class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    product_name: str = Field(sa_column=Column(String(255), nullable=False))
    product_price: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    quantity: int = Field(sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

# --------------------------------------------------------------------------------------------------------------------------------

class RefundStatus(str, enum.Enum):
    INITIATED = "initiated"
    PROCESSED = "processed"
    FAILED = "failed"


class Refund(SQLModel, table=True):
    __tablename__ = "refunds"

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid, unique=True, index=True, nullable=False))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    status: str = Field(default=RefundStatus.INITIATED.value, sa_column=Column(String(32), nullable=False, index=True))
    reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    gateway_refund_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    __table_args__ = (
        Index("uq_refunds_gateway_refund_id", "gateway_refund_id", unique=True),
    )

# --------------------------------------------------------------------------------------------------------------------------------

class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    UNMATCHED = "unmatched"    # referenced order/refund not found yet , kept for reconciliation
    IGNORED = "ignored"


class PaymentWebhookEvent(SQLModel, table=True):
    __tablename__ = "payment_webhook_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default="razorpay", sa_column=Column(String(64), nullable=False, index=True))
    provider_event_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    event_type: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    status: str = Field(default=WebhookEventStatus.RECEIVED.value, sa_column=Column(String(32), nullable=False, index=True))
    attempts: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    __table_args__ = (
        Index("uq_webhook_provider_event", "provider", "provider_event_id", unique=True),
    )
