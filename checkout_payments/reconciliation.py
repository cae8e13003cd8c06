"""
Status reconciliation shared by the checkout, webhook and polling paths.

The applied value is always the freshly fetched canonical status, and the
order row moves through a compare-and-set, so whichever entry point wins the
PENDING -> PAID update is the only one that fires side effects.
"""
from dataclasses import dataclass

import structlog
from sqlalchemy.orm import Session

from checkout_payments import repository
from checkout_payments.access import AccessGrantEngine
from checkout_payments.gateway import translate_status
from checkout_payments.models import OrderStatus, Payment
from checkout_payments.notifications import NotificationPort, payment_approved_email
from checkout_payments.schemas import ProviderPayment

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    status: OrderStatus
    transitioned: bool


class Reconciliation:
    def __init__(self, db: Session, notifier: NotificationPort):
        self.db = db
        self.notifier = notifier

    def apply(self, payment: Payment, provider_payment: ProviderPayment) -> ReconcileOutcome:
        new_status = translate_status(provider_payment.status)
        order_id = payment.order_id

        repository.update_payment(self.db, payment.id, new_status, provider_payment)

        transitioned = False
        if new_status is not OrderStatus.PENDING:
            transitioned = repository.transition_order(self.db, order_id, new_status)

        logger.info(
            "payment_reconciled",
            order_id=order_id,
            transaction_id=provider_payment.id,
            provider_status=provider_payment.status,
            status=new_status.value,
            transitioned=transitioned,
        )

        if transitioned and new_status is OrderStatus.PAID:
            self.settle_paid_order(order_id)

        return ReconcileOutcome(status=new_status, transitioned=transitioned)

    def mark_paid(self, order_id: str) -> bool:
        """Synchronous approval path: same CAS, same side effects."""
        if repository.transition_order(self.db, order_id, OrderStatus.PAID):
            self.settle_paid_order(order_id)
            return True
        return False

    def settle_paid_order(self, order_id: str) -> None:
        """Grant access and send the confirmation. Never raises."""
        order = repository.get_order(self.db, order_id)
        if order is None:
            logger.error("settle_order_missing", order_id=order_id)
            return

        try:
            AccessGrantEngine(self.db).grant_access(order)
        except Exception:
            self.db.rollback()
            logger.exception("access_grant_failed", order_id=order_id)

        try:
            if not self.notifier.send(payment_approved_email(order)):
                logger.warning("payment_approved_email_not_sent", order_id=order_id)
        except Exception:
            logger.exception("payment_approved_email_failed", order_id=order_id)
