"""
Checkout submission.

Per attempt: NEW -> ORDER_CREATED -> GATEWAY_DISPATCHED -> one of
APPROVED, AWAITING_CONFIRMATION or REJECTED. The order is persisted as
PENDING before the gateway is called so every attempt stays auditable.
"""
import re
import uuid

import structlog
from sqlalchemy.orm import Session

from checkout_payments import repository
from checkout_payments.config import Settings, get_settings
from checkout_payments.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    PersistenceError,
    TokenizationTimeoutError,
    ValidationError,
)
from checkout_payments.gateway import (
    AdapterFactory,
    GatewayConfig,
    MercadoPagoAdapter,
    detect_card_brand,
    translate_status,
)
from checkout_payments.models import Gateway, Order, OrderStatus
from checkout_payments.notifications import NotificationPort, boleto_generated_email
from checkout_payments.reconciliation import Reconciliation
from checkout_payments.schemas import BoletoData, PaymentRequest, PaymentResult, PixData, ProviderPayment

logger = structlog.get_logger(__name__)

PAYMENT_METHODS = {
    "credit_card": None,  # resolved from the card brand
    "pix": "pix",
    "boleto": "bolbradesco",
}


class PaymentOrchestrator:
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
        self.reconciliation = Reconciliation(db, notifier)

    def process_payment(self, request: PaymentRequest, customer_user_id: str | None = None) -> PaymentResult:
        """
        Run one checkout attempt.

        Raises ValidationError and ConfigurationError before anything is
        written; GatewayError (order marked FAILED) and GatewayTimeoutError
        (order left PENDING, or FAILED when tokenization timed out) after the
        order exists.
        """
        self._validate(request)

        gateway = repository.get_active_gateway(self.db, request.gateway_id)
        if gateway is None:
            raise ConfigurationError("Payment gateway unavailable")
        config = GatewayConfig.from_gateway(
            gateway,
            base_url=self.settings.mercado_pago_api_url,
            timeout_seconds=self.settings.gateway_timeout_seconds,
        )

        order = repository.create_order(self.db, self._build_order(request, customer_user_id))
        log = logger.bind(order_id=order.id, payment_method=request.payment_method)
        log.info("order_created", amount=str(order.amount))

        try:
            with self.adapter_factory(config) as adapter:
                provider_payment = self._dispatch(adapter, order, request)
        except TokenizationTimeoutError as exc:
            exc.order_id = order.id
            log.error("tokenization_timeout", error=exc.message)
            self._mark_failed(order.id)
            raise
        except GatewayTimeoutError as exc:
            # Outcome unknown: keep PENDING so a webhook can still settle it
            exc.order_id = order.id
            log.error("gateway_timeout", error=exc.message)
            raise
        except GatewayError as exc:
            exc.order_id = order.id
            log.warning("gateway_failed", error=exc.message)
            self._mark_failed(order.id)
            raise

        return self._apply_result(gateway, order, request, provider_payment)

    def _validate(self, request: PaymentRequest) -> None:
        if request.amount is None or request.amount <= 0:
            raise ValidationError("Invalid payment amount. Amount must be greater than zero.")
        if not request.customer_name.strip():
            raise ValidationError("Customer name is required")
        if "@" not in request.customer_email:
            raise ValidationError("A valid customer email is required")
        if not request.gateway_id:
            raise ValidationError("Gateway is required")
        if request.payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {request.payment_method}")
        if request.payment_method == "credit_card" and request.card_data is None:
            raise ValidationError("Card data is required for credit card payment")

    def _build_order(self, request: PaymentRequest, customer_user_id: str | None) -> Order:
        return Order(
            id=str(uuid.uuid4()),
            checkout_id=request.checkout_id,
            offer_id=None if request.offer_id == "direct" else request.offer_id,
            customer_name=request.customer_name.strip(),
            customer_email=request.customer_email.strip(),
            customer_phone=request.customer_phone,
            customer_document=request.customer_cpf,
            customer_user_id=customer_user_id,
            amount=request.amount,
            status=OrderStatus.PENDING.value,
            payment_method=request.payment_method,
            items=[item.model_dump(mode="json") for item in request.items],
        )

    def _dispatch(self, adapter: MercadoPagoAdapter, order: Order, request: PaymentRequest) -> ProviderPayment:
        token = None
        payment_method_id = PAYMENT_METHODS[request.payment_method]

        if request.payment_method == "credit_card":
            card = request.card_data
            token = adapter.create_card_token(
                {
                    "card_number": re.sub(r"\s", "", card.number),
                    "expiration_month": card.expiry_month,
                    "expiration_year": card.expiry_year if len(card.expiry_year) == 4 else "20" + card.expiry_year,
                    "security_code": card.cvc,
                    "cardholder": {"name": card.holder_name},
                }
            )
            payment_method_id = detect_card_brand(card.number)

        first_name, _, last_name = order.customer_name.partition(" ")
        payer = {"email": order.customer_email, "first_name": first_name, "last_name": last_name}
        document = re.sub(r"\D", "", order.customer_document or "")
        if document:
            payer["identification"] = {"type": "CPF", "number": document}

        payload = {
            "transaction_amount": float(order.amount),
            "description": f"Pedido #{order.id}",
            "installments": 1,
            "payment_method_id": payment_method_id,
            "external_reference": order.id,
            "payer": payer,
        }
        if token:
            payload["token"] = token
        notification_url = self._notification_url()
        if notification_url:
            payload["notification_url"] = notification_url

        return adapter.create_payment(payload)

    def _notification_url(self) -> str | None:
        base = self.settings.public_api_url
        # The provider cannot reach a local machine
        if not base or "localhost" in base or "127.0.0.1" in base:
            return None
        return f"{base.rstrip('/')}/webhooks/mercadopago"

    def _apply_result(
        self,
        gateway: Gateway,
        order: Order,
        request: PaymentRequest,
        provider_payment: ProviderPayment,
    ) -> PaymentResult:
        status = translate_status(provider_payment.status)
        log = logger.bind(order_id=order.id, transaction_id=provider_payment.id)

        try:
            repository.record_payment(
                self.db,
                order_id=order.id,
                gateway_id=gateway.id,
                provider_payment=provider_payment,
                status=status,
            )
        except PersistenceError:
            log.warning("payment_record_not_saved")

        if status not in (OrderStatus.PAID, OrderStatus.PENDING):
            self._mark_failed(order.id)
            message = provider_payment.status_detail or "Payment rejected"
            log.info("payment_rejected", provider_status=provider_payment.status, detail=message)
            raise GatewayError(message, order_id=order.id)

        if status is OrderStatus.PAID:
            # No webhook is guaranteed to arrive, so settle here
            try:
                self.reconciliation.mark_paid(order.id)
            except PersistenceError:
                log.warning("order_paid_not_saved")
            log.info("payment_approved")
            return PaymentResult(success=True, order_id=order.id, status=OrderStatus.PAID.value)

        transaction_data = provider_payment.transaction_data
        if request.payment_method == "pix" and transaction_data:
            log.info("payment_awaiting_pix")
            return PaymentResult(
                success=True,
                order_id=order.id,
                status=OrderStatus.PENDING.value,
                pix_data=PixData(
                    qr_code=transaction_data.qr_code or "",
                    qr_code_base64=transaction_data.qr_code_base64 or "",
                ),
            )

        if request.payment_method == "boleto" and transaction_data:
            boleto = BoletoData(
                barcode=transaction_data.qr_code or "",
                url=transaction_data.ticket_url or "",
            )
            log.info("payment_awaiting_boleto")
            self._send_boleto_email(order, boleto)
            return PaymentResult(
                success=True,
                order_id=order.id,
                status=OrderStatus.PENDING.value,
                boleto_data=boleto,
            )

        log.info("payment_in_process", provider_status=provider_payment.status)
        return PaymentResult(
            success=True,
            order_id=order.id,
            status=OrderStatus.PENDING.value,
            message="Payment is being processed",
        )

    def _mark_failed(self, order_id: str) -> None:
        try:
            repository.transition_order(self.db, order_id, OrderStatus.FAILED)
        except PersistenceError:
            # Restricted callers may not update orders; the payment error still wins
            logger.warning("order_mark_failed_rejected", order_id=order_id)

    def _send_boleto_email(self, order: Order, boleto: BoletoData) -> None:
        try:
            self.notifier.send(boleto_generated_email(order, boleto.url, boleto.barcode))
        except Exception:
            logger.exception("boleto_email_failed", order_id=order.id)
