import hashlib
import hmac
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from checkout_payments.database import Base, get_db
from checkout_payments.gateway import MercadoPagoAdapter
from checkout_payments.main import app as fastapi_app
from checkout_payments.models import Checkout, Gateway, Member, Product, ProductContent
from checkout_payments.routes import get_adapter_factory, get_notifier

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_checkout.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WEBHOOK_SECRET = "whsec_test_secret"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return True


class FakeMercadoPago:
    """In-memory Mercado Pago API served through httpx.MockTransport."""

    def __init__(self):
        self.payments = {}
        self.requests = []
        self.next_status = None
        self.next_detail = None
        self.card_token_error = None
        self.timeout = False
        self.token_timeout = False
        self.garbled_fetch = None
        self._sequence = 1000

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/v1/card_tokens":
            if self.token_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            if self.card_token_error:
                return httpx.Response(400, json={"message": self.card_token_error})
            return httpx.Response(201, json={"id": "card_tok_123"})

        if request.method == "POST" and path == "/v1/payments":
            if self.timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            body = json.loads(request.content)
            self._sequence += 1
            # Pix and boleto wait for the buyer; cards settle at once unless told otherwise
            offline = body["payment_method_id"] in ("pix", "bolbradesco")
            status = self.next_status or ("pending" if offline else "approved")
            detail = self.next_detail or ("pending_waiting_transfer" if offline else "accredited")
            payment = {
                "id": self._sequence,
                "status": status,
                "status_detail": detail,
                "payment_method_id": body["payment_method_id"],
                "external_reference": body.get("external_reference"),
                "transaction_amount": body["transaction_amount"],
            }
            if body["payment_method_id"] == "pix":
                payment["point_of_interaction"] = {
                    "transaction_data": {"qr_code": "00020126pix-copy-paste", "qr_code_base64": "iVBORw0KGgo="}
                }
            if body["payment_method_id"] == "bolbradesco":
                payment["point_of_interaction"] = {
                    "transaction_data": {"qr_code": "23793.38128 60000", "ticket_url": "https://mp.test/boleto/1"}
                }
            self.payments[str(self._sequence)] = payment
            return httpx.Response(201, json=payment)

        if request.method == "GET" and path.startswith("/v1/payments/"):
            if self.garbled_fetch is not None:
                return httpx.Response(200, text=self.garbled_fetch)
            payment = self.payments.get(path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=payment)

        return httpx.Response(404, json={"message": "unknown route"})

    def set_status(self, payment_id, status):
        self.payments[str(payment_id)]["status"] = status

    def fetches(self):
        return [r for r in self.requests if r.method == "GET"]

    def adapter_factory(self, config):
        return MercadoPagoAdapter(config, transport=httpx.MockTransport(self.handler))


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fake_mp():
    return FakeMercadoPago()


@pytest.fixture
def gateway_id(db):
    db.add(
        Gateway(
            id="gw-mp",
            provider="mercado_pago",
            active=True,
            environment="sandbox",
            credentials={
                "sandbox": {
                    "public_key": "TEST-public-key",
                    "access_token": "TEST-access-token",
                    "webhook_secret": WEBHOOK_SECRET,
                }
            },
        )
    )
    db.commit()
    return "gw-mp"


@pytest.fixture
def catalog(db):
    """Main product with two contents, one order bump with one content, one member."""
    db.add_all(
        [
            Product(id="prod-main", name="Curso Completo"),
            Product(id="prod-bump", name="Ebook Bonus"),
            Checkout(id="chk-1", product_id="prod-main", order_bump_ids=["prod-bump"]),
            ProductContent(product_id="prod-main", content_id="content-1"),
            ProductContent(product_id="prod-main", content_id="content-2"),
            ProductContent(product_id="prod-bump", content_id="content-3"),
            Member(id="user-1", email="buyer@example.com"),
        ]
    )
    db.commit()


@pytest.fixture
def checkout_payload(gateway_id, catalog):
    def build(**overrides):
        payload = {
            "checkoutId": "chk-1",
            "amount": 150.00,
            "customerName": "Maria Silva",
            "customerEmail": "buyer@example.com",
            "customerCpf": "123.456.789-09",
            "gatewayId": gateway_id,
            "paymentMethod": "pix",
            "items": [
                {"name": "Curso Completo", "price": 150.00, "quantity": 1, "productId": "prod-main", "type": "main"}
            ],
        }
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
def sign_webhook():
    def sign(data_id, request_id="req-abc-123", ts="1700000000", secret=WEBHOOK_SECRET):
        manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
        digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}

    return sign


@pytest.fixture
def client(fake_mp, notifier):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[get_adapter_factory] = lambda: fake_mp.adapter_factory
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def load():
    """Query committed rows through a fresh session."""
    def query(model, **filters):
        session = TestingSessionLocal()
        try:
            return session.query(model).filter_by(**filters).all()
        finally:
            session.close()

    return query


@pytest.fixture
def session_factory():
    return TestingSessionLocal
