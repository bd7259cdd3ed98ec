# keyshop/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint, Uuid
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def now_utc():
    return datetime.now(timezone.utc)


def _enum(cls, name):
    # persist the lowercase values, not the member names
    return Enum(cls, name=name, native_enum=False, length=16,
                values_callable=lambda e: [m.value for m in e])


class ProductStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# statuses whose keys are legitimately sold
FULFILLED_STATUSES = (OrderStatus.PAID, OrderStatus.COMPLETED)


class KeyStatus(str, enum.Enum):
    AVAILABLE = "available"
    SOLD = "sold"
    REVOKED = "revoked"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    status = Column(_enum(ProductStatus, "product_status"), nullable=False, default=ProductStatus.ACTIVE)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    prices = relationship("Price", back_populates="product")


class Price(Base):
    __tablename__ = "prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    country_code = Column(String(2), nullable=True)  # NULL = default price
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    product = relationship("Product", back_populates="prices")

    __table_args__ = (
        CheckConstraint("amount > 0", name="prices_amount_positive"),
        UniqueConstraint("product_id", "country_code", name="prices_product_country_unique"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_no = Column(String(32), nullable=False, unique=True)
    email = Column(String(320), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    country_code = Column(String(2), nullable=True)
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING)
    payment_method = Column(String(32), nullable=False)
    transaction_id = Column(String(128), nullable=True)
    customer_ip = Column(String(64), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(String(500), nullable=True)
    refund_requested_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="orders_amount_positive"),
        Index("ix_orders_status_created", "status", "created_at"),
    )

    # keys point back at the order via LicenseKey.order_id; no key list lives here
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_items_quantity_positive"),
    )


class LicenseKey(Base):
    __tablename__ = "license_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    encrypted_value = Column(Text, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    status = Column(_enum(KeyStatus, "key_status"), nullable=False, default=KeyStatus.AVAILABLE)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    sold_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String(500), nullable=True)

    __table_args__ = (
        UniqueConstraint("product_id", "fingerprint", name="license_keys_product_fingerprint_unique"),
        CheckConstraint("status <> 'sold' OR order_id IS NOT NULL", name="license_keys_sold_has_order"),
        # FIFO pick: product + status, oldest first
        Index("ix_license_keys_pick", "product_id", "status", "created_at", "id"),
        Index("ix_license_keys_order", "order_id"),
    )
