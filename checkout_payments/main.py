from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from checkout_payments.database import Base, engine, get_db
from checkout_payments.gateway import AdapterFactory
from checkout_payments.logging_config import setup_logging
from checkout_payments.notifications import NotificationPort
from checkout_payments.reconciler import WebhookReconciler
from checkout_payments.routes import get_adapter_factory, get_notifier, router
from checkout_payments.schemas import WebhookAck

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("application_startup")
    yield
    logger.info("application_shutdown")


app = FastAPI(title="Checkout Payment Orchestrator", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.post("/webhooks/mercadopago", response_model=WebhookAck)
async def mercadopago_webhook(
    request: Request,
    x_signature: str | None = Header(None),
    x_request_id: str | None = Header(None),
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
):
    # Always 200: a non-2xx answer only makes the provider retry forever
    payload = await request.body()
    reconciler = WebhookReconciler(db, notifier, adapter_factory)
    result = await run_in_threadpool(reconciler.handle, payload, x_signature, x_request_id)
    return WebhookAck(success=result.processed, message=result.message)
