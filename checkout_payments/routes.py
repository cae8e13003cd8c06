from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from checkout_payments import repository
from checkout_payments.auth import optional_customer, verify_token
from checkout_payments.config import get_settings
from checkout_payments.database import get_db
from checkout_payments.exceptions import (
    CheckoutError,
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    ValidationError,
)
from checkout_payments.gateway import AdapterFactory, MercadoPagoAdapter
from checkout_payments.notifications import HttpNotifier, LoggingNotifier, NotificationPort
from checkout_payments.orchestrator import PaymentOrchestrator
from checkout_payments.poller import StatusPoller
from checkout_payments.schemas import PaymentRequest, PaymentResult, StatusResponse, WebhookLogOut

router = APIRouter()

ERROR_STATUS = (
    (ValidationError, 400),
    (ConfigurationError, 503),
    (GatewayTimeoutError, 504),
    (GatewayError, 402),
)


def get_notifier() -> NotificationPort:
    settings = get_settings()
    if settings.notification_url:
        return HttpNotifier(settings.notification_url, settings.notification_api_key)
    return LoggingNotifier()


def get_adapter_factory() -> AdapterFactory:
    return MercadoPagoAdapter


def _error_response(exc: CheckoutError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    body = PaymentResult(success=False, order_id=exc.order_id, message=exc.message, error=exc.code)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@router.post("/payments", response_model=PaymentResult, response_model_exclude_none=True)
def create_payment_api(
    request: PaymentRequest,
    customer_user_id: str | None = Depends(optional_customer),
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
):
    orchestrator = PaymentOrchestrator(db, notifier, adapter_factory)
    try:
        return orchestrator.process_payment(request, customer_user_id)
    except CheckoutError as exc:
        return _error_response(exc)


@router.get("/check-status", response_model=StatusResponse)
def check_status(
    order_id: str = Query(..., alias="orderId"),
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
):
    poller = StatusPoller(db, notifier, adapter_factory)
    try:
        return poller.check(order_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@router.get("/webhook-logs", response_model=list[WebhookLogOut])
def webhook_logs(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    return repository.list_webhook_logs(db, limit)
