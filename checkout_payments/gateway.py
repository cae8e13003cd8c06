"""
Mercado Pago Core API adapter.

Covers card tokenization, payment creation, canonical payment lookup,
webhook signature verification and status translation.
"""
import hashlib
import hmac
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import httpx
import structlog

from checkout_payments.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    TokenizationError,
    TokenizationTimeoutError,
)
from checkout_payments.models import Gateway, OrderStatus
from checkout_payments.schemas import ProviderPayment

logger = structlog.get_logger(__name__)

PROVIDER_MERCADO_PAGO = "mercado_pago"

STATUS_TABLE = {
    "approved": OrderStatus.PAID,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "authorized": OrderStatus.PENDING,
    "rejected": OrderStatus.FAILED,
    "cancelled": OrderStatus.CANCELED,
    "refunded": OrderStatus.REFUNDED,
    "charged_back": OrderStatus.REFUNDED,
}


def translate_status(provider_status: str | None) -> OrderStatus:
    """Unknown statuses map to PENDING so an event is never dropped."""
    return STATUS_TABLE.get(provider_status or "", OrderStatus.PENDING)


def detect_card_brand(number: str) -> str:
    clean = re.sub(r"\D", "", number)
    if clean.startswith("4"):
        return "visa"
    if re.match(r"^5[1-5]", clean):
        return "master"
    if re.match(r"^3[47]", clean):
        return "amex"
    if clean.startswith("6"):
        return "elo"
    return "master"


@dataclass(frozen=True)
class GatewayConfig:
    gateway_id: str
    provider: str
    environment: str
    public_key: str
    access_token: str
    webhook_secret: str | None
    base_url: str
    timeout_seconds: float = 15.0

    @classmethod
    def from_gateway(cls, gateway: Gateway, base_url: str, timeout_seconds: float = 15.0) -> "GatewayConfig":
        """Resolve the credential set of the gateway's environment, once."""
        environment = gateway.environment or "sandbox"
        credentials = (gateway.credentials or {}).get(environment) or {}

        public_key = credentials.get("public_key")
        access_token = credentials.get("access_token")
        if not public_key or not access_token:
            raise ConfigurationError(
                f"Gateway {gateway.id} has no {environment} credentials configured"
            )

        return cls(
            gateway_id=gateway.id,
            provider=gateway.provider,
            environment=environment,
            public_key=public_key,
            access_token=access_token,
            webhook_secret=credentials.get("webhook_secret"),
            base_url=base_url.rstrip("/"),
            timeout_seconds=timeout_seconds,
        )


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if not isinstance(body, dict):
        return f"HTTP {response.status_code}"
    causes = body.get("cause") or []
    if causes and isinstance(causes, list) and isinstance(causes[0], dict):
        description = causes[0].get("description")
        if description:
            return description
    return body.get("message") or body.get("error") or f"HTTP {response.status_code}"


def _parse_payment(response: httpx.Response) -> ProviderPayment:
    # Anything that is not a payment object, including non-JSON bodies
    try:
        return ProviderPayment.from_response(response.json())
    except (ValueError, TypeError) as exc:
        logger.warning("gateway_response_malformed", status_code=response.status_code, error=str(exc))
        raise GatewayError("Malformed provider response")


def parse_signature_header(signature_header: str) -> tuple[str | None, str | None]:
    ts = v1 = None
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            ts = value
        elif key == "v1":
            v1 = value
    return ts, v1


def webhook_data_id(payload: Mapping[str, Any]) -> str | None:
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
    data_id = data.get("id") or payload.get("id")
    return str(data_id) if data_id is not None else None


def verify_webhook_signature(
    payload: Mapping[str, Any],
    signature_header: str | None,
    request_id: str | None,
    secret: str | None,
) -> bool:
    """
    Recompute HMAC-SHA256 over `id:<id>;request-id:<rid>;ts:<ts>;`.

    Fails closed: anything that prevents a full comparison rejects the event.
    """
    if not signature_header or not request_id:
        return False
    if not secret:
        logger.error("webhook_secret_missing")
        return False

    ts, received = parse_signature_header(signature_header)
    data_id = webhook_data_id(payload)
    if not ts or not received or not data_id:
        return False

    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    try:
        expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    except (ValueError, TypeError) as exc:
        logger.error("webhook_signature_digest_failed", error=str(exc))
        return False

    return hmac.compare_digest(expected, received.strip().lower())


class MercadoPagoAdapter:
    def __init__(self, config: GatewayConfig, transport: httpx.BaseTransport | None = None):
        self.config = config
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> "MercadoPagoAdapter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.access_token}"}

    def create_card_token(self, card_data: dict[str, Any], public_key: str | None = None) -> str:
        key = public_key or self.config.public_key
        if not key:
            raise ConfigurationError("Public key not provided for tokenization")

        try:
            response = self._client.post(
                "/v1/card_tokens", params={"public_key": key}, json=card_data
            )
        except httpx.TimeoutException:
            raise TokenizationTimeoutError("Card tokenization timed out")
        except httpx.RequestError as exc:
            raise TokenizationError(f"Failed to tokenize card: {exc}")

        if not response.is_success:
            reason = _error_reason(response)
            logger.warning("card_tokenization_failed", status_code=response.status_code, reason=reason)
            raise TokenizationError(f"Failed to tokenize card: {reason}")

        try:
            return response.json()["id"]
        except (ValueError, TypeError, KeyError):
            raise TokenizationError("Failed to tokenize card: malformed provider response")

    def create_payment(self, payment_data: dict[str, Any]) -> ProviderPayment:
        # Fresh key per attempt: a retried request must never charge twice
        idempotency_key = str(uuid.uuid4())
        headers = {**self._auth_headers(), "X-Idempotency-Key": idempotency_key}

        logger.info("gateway_create_payment", idempotency_key=idempotency_key)
        try:
            response = self._client.post("/v1/payments", json=payment_data, headers=headers)
        except httpx.TimeoutException:
            logger.error("gateway_create_payment_timeout", idempotency_key=idempotency_key)
            raise GatewayTimeoutError("Payment request timed out")
        except httpx.RequestError as exc:
            raise GatewayError(f"Failed to process payment: {exc}")

        if not response.is_success:
            reason = _error_reason(response)
            logger.warning("gateway_create_payment_rejected", status_code=response.status_code, reason=reason)
            raise GatewayError(f"Mercado Pago API error: {response.status_code} - {reason}")

        return _parse_payment(response)

    def get_payment_info(self, payment_id: str) -> ProviderPayment:
        try:
            response = self._client.get(f"/v1/payments/{payment_id}", headers=self._auth_headers())
        except httpx.TimeoutException:
            raise GatewayTimeoutError(f"Payment lookup {payment_id} timed out")
        except httpx.RequestError as exc:
            raise GatewayError(f"Failed to fetch payment info: {exc}")

        if not response.is_success:
            raise GatewayError(f"Failed to fetch payment info: {response.status_code}")

        return _parse_payment(response)

    def validate_webhook_signature(
        self,
        payload: Mapping[str, Any],
        signature_header: str | None,
        request_id: str | None,
        secret: str | None = None,
    ) -> bool:
        return verify_webhook_signature(
            payload, signature_header, request_id, secret or self.config.webhook_secret
        )

    translate_status = staticmethod(translate_status)


AdapterFactory = Callable[[GatewayConfig], MercadoPagoAdapter]
