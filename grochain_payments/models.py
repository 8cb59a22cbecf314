import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship

from grochain_payments.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return uuid.uuid4().hex


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType:
    PAYMENT = "payment"
    REFUND = "refund"
    PLATFORM_FEE = "platform_fee"


class TransactionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_id)
    buyer_id = Column(String, nullable=False, index=True)
    buyer_email = Column(String, nullable=False)
    shipping_address = Column(JSON, nullable=False, default=dict)
    total = Column(Integer, nullable=False)                 # kobo
    currency = Column(String(3), nullable=False, default="NGN")
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING)
    payment_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="order")

    def mark_paid(self, reference):
        # fulfilment states are left alone, only the payment side changes
        if self.status == OrderStatus.PENDING:
            self.status = OrderStatus.PAID
        self.payment_status = PaymentStatus.PAID
        self.payment_reference = reference

    def to_dict(self):
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "items": [
                {
                    "listing_id": item.listing_id,
                    "quantity": item.quantity,
                    "price": item.price,
                    "unit": item.unit,
                }
                for item in self.items
            ],
            "shipping_address": self.shipping_address,
            "total": self.total,
            "currency": self.currency,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_reference": self.payment_reference,
        }


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    listing_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)                 # kobo per unit
    unit = Column(String(20), nullable=False, default="kg")

    order = relationship("Order", back_populates="items")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_status_type", "status", "type"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    type = Column(String(20), nullable=False, default=TransactionType.PAYMENT)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING)
    amount = Column(Integer, nullable=False)                # kobo
    currency = Column(String(3), nullable=False, default="NGN")
    reference = Column(String, unique=True, nullable=False, index=True)
    description = Column(String, nullable=False, default="")
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=True, index=True)
    user_id = Column(String, nullable=True)
    payment_provider = Column(String(20), nullable=False, default="paystack")  # paystack | system
    payment_provider_reference = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="transactions")

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "reference": self.reference,
            "description": self.description,
            "order_id": self.order_id,
            "payment_provider": self.payment_provider,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
