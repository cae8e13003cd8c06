import hashlib
import hmac
import json

import httpx
import pytest

from checkout_payments.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    TokenizationError,
    TokenizationTimeoutError,
)
from checkout_payments.gateway import (
    STATUS_TABLE,
    GatewayConfig,
    MercadoPagoAdapter,
    detect_card_brand,
    translate_status,
    verify_webhook_signature,
)
from checkout_payments.models import Gateway, OrderStatus

SECRET = "whsec_unit"


def make_config(**overrides):
    values = dict(
        gateway_id="gw-1",
        provider="mercado_pago",
        environment="sandbox",
        public_key="TEST-pk",
        access_token="TEST-at",
        webhook_secret=SECRET,
        base_url="https://api.mp.test",
        timeout_seconds=15.0,
    )
    values.update(overrides)
    return GatewayConfig(**values)


def signature_for(data_id, request_id="req-1", ts="1704067200", secret=SECRET):
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    return f"ts={ts},v1=" + hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def test_translate_status_covers_the_table():
    for provider_status, expected in STATUS_TABLE.items():
        assert translate_status(provider_status) is expected

    assert translate_status("approved") is OrderStatus.PAID
    assert translate_status("charged_back") is OrderStatus.REFUNDED


@pytest.mark.parametrize("provider_status", ["", None, "APPROVED", "in_mediation", "something_new"])
def test_translate_status_defaults_unknown_to_pending(provider_status):
    assert translate_status(provider_status) is OrderStatus.PENDING


@pytest.mark.parametrize(
    "number,brand",
    [("4111 1111 1111 1111", "visa"), ("5502 0900 0000 0000", "master"), ("3782 822463 10005", "amex"),
     ("6362 9700 0045 7013", "elo"), ("9999", "master")],
)
def test_detect_card_brand(number, brand):
    assert detect_card_brand(number) == brand


def test_signature_with_correct_hmac_is_accepted():
    payload = {"type": "payment", "action": "payment.updated", "data": {"id": "123456"}}

    assert verify_webhook_signature(payload, signature_for("123456"), "req-1", SECRET) is True


def test_signature_with_tampered_hash_is_rejected():
    payload = {"data": {"id": "123456"}}
    forged = signature_for("123456")[:-4] + "beef"

    assert verify_webhook_signature(payload, forged, "req-1", SECRET) is False


def test_signature_for_another_payment_is_rejected():
    payload = {"data": {"id": "999"}}

    assert verify_webhook_signature(payload, signature_for("123456"), "req-1", SECRET) is False


def test_signature_fails_closed_without_secret_or_headers():
    payload = {"data": {"id": "123456"}}
    header = signature_for("123456")

    assert verify_webhook_signature(payload, header, "req-1", None) is False
    assert verify_webhook_signature(payload, header, "req-1", "") is False
    assert verify_webhook_signature(payload, None, "req-1", SECRET) is False
    assert verify_webhook_signature(payload, header, None, SECRET) is False
    assert verify_webhook_signature(payload, "v1=abc", "req-1", SECRET) is False


def test_gateway_config_resolves_environment_credentials():
    gateway = Gateway(
        id="gw-9",
        provider="mercado_pago",
        environment="production",
        credentials={
            "sandbox": {"public_key": "TEST-pk", "access_token": "TEST-at"},
            "production": {"public_key": "APP-pk", "access_token": "APP-at", "webhook_secret": "prod"},
        },
    )

    config = GatewayConfig.from_gateway(gateway, base_url="https://api.mercadopago.com/")

    assert config.access_token == "APP-at"
    assert config.webhook_secret == "prod"
    assert config.base_url == "https://api.mercadopago.com"


def test_gateway_config_requires_credentials():
    gateway = Gateway(id="gw-9", provider="mercado_pago", environment="production",
                      credentials={"sandbox": {"public_key": "TEST-pk", "access_token": "TEST-at"}})

    with pytest.raises(ConfigurationError):
        GatewayConfig.from_gateway(gateway, base_url="https://api.mercadopago.com")


def test_create_payment_sends_bearer_and_fresh_idempotency_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": 42, "status": "pending", "status_detail": "pending_waiting_transfer"})

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        first = adapter.create_payment({"transaction_amount": 10.0})
        adapter.create_payment({"transaction_amount": 10.0})

    assert first.id == "42"
    assert first.raw["status_detail"] == "pending_waiting_transfer"
    assert seen[0].headers["Authorization"] == "Bearer TEST-at"
    keys = {r.headers["X-Idempotency-Key"] for r in seen}
    assert len(keys) == 2


def test_create_payment_timeout_is_distinguished():
    def handler(request):
        raise httpx.ReadTimeout("slow provider", request=request)

    with MercadoPagoAdapter(make_config(timeout_seconds=0.1), transport=httpx.MockTransport(handler)) as adapter:
        with pytest.raises(GatewayTimeoutError) as exc_info:
            adapter.create_payment({"transaction_amount": 10.0})

    assert not isinstance(exc_info.value, GatewayError)


def test_create_payment_non_success_raises_gateway_error():
    def handler(request):
        return httpx.Response(400, json={"message": "invalid payer"})

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        with pytest.raises(GatewayError, match="invalid payer"):
            adapter.create_payment({"transaction_amount": 10.0})


def test_create_card_token_passes_public_key():
    def handler(request):
        assert request.url.params["public_key"] == "TEST-pk"
        assert "Authorization" not in request.headers
        assert json.loads(request.content)["card_number"] == "4111111111111111"
        return httpx.Response(201, json={"id": "tok_1"})

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        assert adapter.create_card_token({"card_number": "4111111111111111"}) == "tok_1"


def test_create_card_token_failure_carries_provider_reason():
    def handler(request):
        return httpx.Response(400, json={"cause": [{"code": "E301", "description": "invalid card_number"}]})

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        with pytest.raises(TokenizationError) as exc_info:
            adapter.create_card_token({"card_number": "1234"})

    assert exc_info.value.message == "Failed to tokenize card: invalid card_number"


def test_get_payment_info_parses_canonical_snapshot():
    def handler(request):
        assert request.url.path == "/v1/payments/777"
        return httpx.Response(200, json={
            "id": 777,
            "status": "approved",
            "external_reference": "order-1",
            "point_of_interaction": {"transaction_data": {"qr_code": "qr"}},
        })

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        payment = adapter.get_payment_info("777")

    assert payment.id == "777"
    assert payment.status == "approved"
    assert payment.external_reference == "order-1"
    assert payment.transaction_data.qr_code == "qr"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>upstream proxy error</html>"),
        httpx.Response(200, json={"id": 777, "status_detail": "accredited"}),
        httpx.Response(200, json=[{"id": 777}]),
    ],
)
def test_get_payment_info_rejects_malformed_snapshot(response):
    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(lambda r: response)) as adapter:
        with pytest.raises(GatewayError, match="Malformed provider response"):
            adapter.get_payment_info("777")


def test_create_payment_rejects_non_json_success():
    def handler(request):
        return httpx.Response(201, text="created")

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        with pytest.raises(GatewayError, match="Malformed provider response"):
            adapter.create_payment({"transaction_amount": 10.0})


def test_card_token_timeout_is_a_tokenization_timeout():
    def handler(request):
        raise httpx.ConnectTimeout("no route", request=request)

    with MercadoPagoAdapter(make_config(), transport=httpx.MockTransport(handler)) as adapter:
        with pytest.raises(TokenizationTimeoutError):
            adapter.create_card_token({"card_number": "4111111111111111"})
