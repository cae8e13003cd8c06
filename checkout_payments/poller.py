"""
Client-triggered status check.

Webhooks cannot reach every deployment (local development in particular), so
the thank-you page polls here and the same reconciliation runs on demand.
"""
import structlog
from sqlalchemy.orm import Session

from checkout_payments import repository
from checkout_payments.config import Settings, get_settings
from checkout_payments.exceptions import CheckoutError, NotFoundError
from checkout_payments.gateway import PROVIDER_MERCADO_PAGO, AdapterFactory, GatewayConfig, MercadoPagoAdapter
from checkout_payments.models import Gateway, OrderStatus
from checkout_payments.notifications import NotificationPort
from checkout_payments.reconciliation import Reconciliation
from checkout_payments.schemas import StatusResponse

logger = structlog.get_logger(__name__)


class StatusPoller:
    def __init__(
        self,
        db: Session,
        notifier: NotificationPort,
        adapter_factory: AdapterFactory = MercadoPagoAdapter,
        settings: Settings | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.adapter_factory = adapter_factory
        self.settings = settings or get_settings()

    def check(self, order_id: str) -> StatusResponse:
        order = repository.get_order(self.db, order_id)
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)

        if order.status == OrderStatus.PAID.value:
            return StatusResponse(status=order.status)

        payment = repository.get_latest_payment(self.db, order_id)
        if payment is None or not payment.transaction_id:
            # Checkout may still be recording the attempt
            return StatusResponse(status=order.status)

        gateway = self.db.get(Gateway, payment.gateway_id) if payment.gateway_id else None
        if gateway is None or gateway.provider != PROVIDER_MERCADO_PAGO:
            return StatusResponse(status=order.status)

        try:
            config = GatewayConfig.from_gateway(
                gateway,
                base_url=self.settings.mercado_pago_api_url,
                timeout_seconds=self.settings.gateway_timeout_seconds,
            )
            with self.adapter_factory(config) as adapter:
                canonical = adapter.get_payment_info(payment.transaction_id)
            Reconciliation(self.db, self.notifier).apply(payment, canonical)
        except CheckoutError as exc:
            logger.warning("status_poll_failed", order_id=order_id, error=exc.message, code=exc.code)
            self.db.rollback()
            return StatusResponse(status=repository.get_order(self.db, order_id).status)

        self.db.refresh(order)
        return StatusResponse(status=order.status, provider_status=canonical.status)
