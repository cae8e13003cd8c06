import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from checkout_payments.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


# Allowed predecessors for each target status. Anything else is ignored.
ORDER_TRANSITIONS = {
    OrderStatus.PAID: (OrderStatus.PENDING,),
    OrderStatus.FAILED: (OrderStatus.PENDING,),
    OrderStatus.CANCELED: (OrderStatus.PENDING,),
    OrderStatus.REFUNDED: (OrderStatus.PAID,),
}


class Gateway(Base):
    __tablename__ = "gateways"

    id = Column(String, primary_key=True, default=_uuid)
    provider = Column(String, nullable=False, index=True)     # mercado_pago
    active = Column(Boolean, nullable=False, default=True)
    environment = Column(String, nullable=False, default="sandbox")  # sandbox | production
    credentials = Column(JSON, nullable=False, default=dict)  # {"sandbox": {...}, "production": {...}}
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    checkout_id = Column(String, index=True)
    offer_id = Column(String)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, index=True)
    customer_phone = Column(String)
    customer_document = Column(String)                        # CPF/CNPJ
    customer_user_id = Column(String, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    payment_method = Column(String, nullable=False)          # credit_card | pix | boleto
    items = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    gateway_id = Column(String, ForeignKey("gateways.id"))
    status = Column(String, nullable=False)
    transaction_id = Column(String, unique=True, index=True)  # provider payment id
    raw_response = Column(Text)                               # verbatim provider JSON
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True, default=_uuid)
    gateway_id = Column(String)
    direction = Column(String, nullable=False, default="incoming")
    event = Column(String, nullable=False)
    payload = Column(Text)
    processed = Column(Boolean, nullable=False, default=False)
    message = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "content_id", name="uq_access_grants_user_content"),
        UniqueConstraint("user_id", "product_id", name="uq_access_grants_user_product"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    content_id = Column(String)
    product_id = Column(String)
    source_product_id = Column(String)                        # product that granted a content row
    status = Column(String, nullable=False, default="active") # active | revoked | expired
    granted_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True))


# Catalog read-models: maintained elsewhere, read here to resolve entitlements.

class Member(Base):
    __tablename__ = "members"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)


class Checkout(Base):
    __tablename__ = "checkouts"

    id = Column(String, primary_key=True, default=_uuid)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    order_bump_ids = Column(JSON, nullable=False, default=list)


class ProductContent(Base):
    __tablename__ = "product_contents"

    product_id = Column(String, ForeignKey("products.id"), primary_key=True)
    content_id = Column(String, primary_key=True)
