"""
Persistence helpers.

Every write that can race with another entry point is either a conditional
UPDATE or an INSERT ... ON CONFLICT, so no application lock is needed.
"""
import json
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from checkout_payments.exceptions import PersistenceError
from checkout_payments.models import (
    ORDER_TRANSITIONS,
    AccessGrant,
    Gateway,
    Order,
    OrderStatus,
    Payment,
    WebhookLog,
    utcnow,
)
from checkout_payments.schemas import ProviderPayment

logger = structlog.get_logger(__name__)


@contextmanager
def persisting(db: Session, action: str, **context: Any) -> Iterator[None]:
    try:
        yield
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("persistence_failed", action=action, error=str(exc), **context)
        raise PersistenceError(f"Could not {action}", order_id=context.get("order_id")) from exc


def _insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


# --- Gateways ---

def get_active_gateway(db: Session, gateway_id: str) -> Gateway | None:
    return db.scalars(
        select(Gateway).where(Gateway.id == gateway_id, Gateway.active.is_(True))
    ).first()


def get_active_gateway_for_provider(db: Session, provider: str) -> Gateway | None:
    return db.scalars(
        select(Gateway)
        .where(Gateway.provider == provider, Gateway.active.is_(True))
        .order_by(Gateway.created_at.desc())
    ).first()


# --- Orders ---

def create_order(db: Session, order: Order) -> Order:
    with persisting(db, "create order", order_id=order.id):
        db.add(order)
    db.refresh(order)
    return order


def get_order(db: Session, order_id: str) -> Order | None:
    return db.get(Order, order_id)


def transition_order(db: Session, order_id: str, new_status: OrderStatus) -> bool:
    """
    Compare-and-set the order status.

    Returns True only for the caller whose UPDATE moved the row; replays and
    late arrivals match zero rows.
    """
    allowed_from = ORDER_TRANSITIONS.get(new_status)
    if not allowed_from:
        return False

    with persisting(db, "update order status", order_id=order_id):
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_([s.value for s in allowed_from]))
            .values(status=new_status.value)
        )
    return result.rowcount == 1


# --- Payments ---

def record_payment(
    db: Session,
    *,
    order_id: str,
    gateway_id: str | None,
    provider_payment: ProviderPayment,
    status: OrderStatus,
) -> Payment | None:
    """Insert the payment attempt unless another entry point already did."""
    with persisting(db, "record payment", order_id=order_id):
        db.execute(
            _insert(db, Payment)
            .values(
                id=str(uuid.uuid4()),
                order_id=order_id,
                gateway_id=gateway_id,
                status=status.value,
                transaction_id=provider_payment.id,
                raw_response=json.dumps(provider_payment.raw),
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
        )
    return get_payment_by_transaction(db, provider_payment.id)


def get_payment_by_transaction(db: Session, transaction_id: str) -> Payment | None:
    return db.scalars(select(Payment).where(Payment.transaction_id == transaction_id)).first()


def get_latest_payment(db: Session, order_id: str) -> Payment | None:
    return db.scalars(
        select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc())
    ).first()


def update_payment(db: Session, payment_id: str, status: OrderStatus, provider_payment: ProviderPayment) -> None:
    with persisting(db, "update payment", payment_id=payment_id):
        db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(
                status=status.value,
                raw_response=json.dumps(provider_payment.raw),
                updated_at=utcnow(),
            )
        )


# --- Access grants ---

def upsert_access_grant(
    db: Session,
    user_id: str,
    *,
    content_id: str | None = None,
    product_id: str | None = None,
    source_product_id: str | None = None,
) -> None:
    """Caller commits; conflict target is (user, content) or (user, product)."""
    conflict = ["user_id", "content_id"] if content_id else ["user_id", "product_id"]
    now = utcnow()
    stmt = _insert(db, AccessGrant).values(
        id=str(uuid.uuid4()),
        user_id=user_id,
        content_id=content_id,
        product_id=product_id,
        source_product_id=source_product_id,
        status="active",
        granted_at=now,
    )
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=conflict,
            set_={"status": "active", "granted_at": now},
        )
    )


# --- Webhook audit ---

def log_webhook(
    db: Session,
    *,
    event: str,
    payload: str | None,
    processed: bool,
    message: str | None = None,
    gateway_id: str | None = None,
) -> None:
    with persisting(db, "append webhook log"):
        db.add(
            WebhookLog(
                gateway_id=gateway_id,
                direction="incoming",
                event=event,
                payload=payload,
                processed=processed,
                message=message,
            )
        )


def list_webhook_logs(db: Session, limit: int = 50) -> list[WebhookLog]:
    return list(
        db.scalars(select(WebhookLog).order_by(WebhookLog.created_at.desc()).limit(limit))
    )
