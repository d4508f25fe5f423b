import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from storefront.database import Base


def _now():
    return datetime.now(timezone.utc)


def _id(prefix):
    return lambda: f"{prefix}_{uuid.uuid4().hex[:16]}"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"
    QUOTE_ONLY = "quote_only"


class EventKind(str, Enum):
    SESSION_COMPLETED = "session_completed"
    INTENT_SUCCEEDED = "intent_succeeded"
    INTENT_FAILED = "intent_failed"


class RefundMethod(str, Enum):
    ORIGINAL = "original"
    MANUAL = "manual"
    CASH = "cash"


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    PROCESSED = "processed"


class OrderRefundState(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_id("ord"))
    customer_email = Column(String, nullable=False, index=True)
    customer_name = Column(String, default="")
    status = Column(String, nullable=False, default=OrderStatus.PENDING_PAYMENT.value)
    total_amount = Column(Integer, nullable=False)           # minor units, immutable
    currency = Column(String(3), nullable=False, default="EUR")
    payment_method = Column(String, nullable=False, default=PaymentMethod.CARD.value)
    payment_reference = Column(String, nullable=True)        # provider PaymentIntent id
    refund_status = Column(String, nullable=False, default=OrderRefundState.NONE.value)
    notes = Column(Text, nullable=False, default="")         # audit trail only
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
    refunds = relationship("Refund", back_populates="order", order_by="Refund.created_at")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, nullable=False)
    product_name = Column(String, default="")
    unit_price = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class PaymentEvent(Base):
    """One row per provider event that has produced its effect."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_event_id = Column(String, unique=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), default=_now)


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True, default=_id("rf"))
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    method = Column(String, nullable=False)
    status = Column(String, nullable=False, default=RefundStatus.PENDING.value)
    provider_refund_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    order = relationship("Order", back_populates="refunds")
