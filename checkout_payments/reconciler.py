"""
Inbound Mercado Pago notifications.

The body is only trusted for the payment id. Everything applied comes from a
canonical re-fetch, and every delivery leaves a WebhookLog row behind.
"""
import json
from dataclasses import dataclass

import structlog
from sqlalchemy.orm import Session

from checkout_payments import repository
from checkout_payments.config import Settings, get_settings
from checkout_payments.exceptions import (
    CheckoutError,
    ConfigurationError,
    PersistenceError,
    SignatureError,
    ValidationError,
)
from checkout_payments.gateway import (
    PROVIDER_MERCADO_PAGO,
    AdapterFactory,
    GatewayConfig,
    MercadoPagoAdapter,
    webhook_data_id,
)
from checkout_payments.models import Gateway, OrderStatus, Payment
from checkout_payments.notifications import NotificationPort
from checkout_payments.reconciliation import Reconciliation
from checkout_payments.schemas import ProviderPayment

logger = structlog.get_logger(__name__)


@dataclass
class WebhookResult:
    event: str = "webhook.received"
    processed: bool = False
    message: str = "Webhook received but not processed"
    gateway_id: str | None = None
    order_id: str | None = None


class WebhookReconciler:
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

    def handle(self, body: bytes, signature: str | None, request_id: str | None) -> WebhookResult:
        """Process one delivery. Never raises; the outcome lands in the audit log."""
        result = WebhookResult()
        payload_text = body.decode("utf-8", errors="replace")

        try:
            payload = self._parse(payload_text)
            result.event = payload.get("action") or payload.get("type") or "payment.updated"
            self._process(payload, signature, request_id, result)
        except SignatureError as exc:
            result.message = exc.message
            logger.warning("webhook_signature_rejected", request_id=request_id)
        except CheckoutError as exc:
            result.message = exc.message
            logger.error("webhook_not_processed", error=exc.message, code=exc.code, request_id=request_id)
        except Exception:
            self.db.rollback()
            result.message = "Internal error while processing webhook"
            logger.exception("webhook_processing_error", request_id=request_id)

        self._append_log(result, payload_text)
        return result

    def _parse(self, payload_text: str) -> dict:
        try:
            payload = json.loads(payload_text) if payload_text else {}
        except ValueError:
            raise ValidationError("Malformed webhook body")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return payload

    def _process(self, payload: dict, signature: str | None, request_id: str | None, result: WebhookResult) -> None:
        event_type = payload.get("type") or payload.get("topic")
        if event_type not in (None, "payment"):
            result.message = f"Ignored event type: {event_type}"
            return

        gateway = repository.get_active_gateway_for_provider(self.db, PROVIDER_MERCADO_PAGO)
        if gateway is None:
            raise ConfigurationError("Gateway configuration missing")
        result.gateway_id = gateway.id
        config = GatewayConfig.from_gateway(
            gateway,
            base_url=self.settings.mercado_pago_api_url,
            timeout_seconds=self.settings.gateway_timeout_seconds,
        )

        with self.adapter_factory(config) as adapter:
            if not adapter.validate_webhook_signature(payload, signature, request_id, config.webhook_secret):
                raise SignatureError("Invalid signature")

            payment_id = webhook_data_id(payload)
            if not payment_id:
                raise ValidationError("Missing payment ID")

            payment = repository.get_payment_by_transaction(self.db, payment_id)
            canonical = adapter.get_payment_info(payment_id)

        if payment is None:
            payment = self._attach_by_reference(gateway, canonical)

        outcome = Reconciliation(self.db, self.notifier).apply(payment, canonical)
        result.processed = True
        result.order_id = payment.order_id
        result.message = f"Order {payment.order_id} -> {outcome.status.value}"

    def _attach_by_reference(self, gateway: Gateway, canonical: ProviderPayment) -> Payment:
        """A payment the checkout never recorded (e.g. after a timeout)."""
        order = repository.get_order(self.db, canonical.external_reference) if canonical.external_reference else None
        if order is None:
            raise CheckoutError("Payment not found")

        logger.info("webhook_payment_attached", order_id=order.id, transaction_id=canonical.id)
        return repository.record_payment(
            self.db,
            order_id=order.id,
            gateway_id=gateway.id,
            provider_payment=canonical,
            status=OrderStatus.PENDING,
        )

    def _append_log(self, result: WebhookResult, payload_text: str) -> None:
        try:
            repository.log_webhook(
                self.db,
                event=result.event,
                payload=payload_text,
                processed=result.processed,
                message=result.message,
                gateway_id=result.gateway_id,
            )
        except PersistenceError:
            logger.error("webhook_log_not_saved", event=result.event, processed=result.processed)
