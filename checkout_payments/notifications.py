"""
Notification port and transactional email templates.

Delivery is best effort: senders log failures and return False, they never
raise into the payment flow.
"""
from dataclasses import dataclass
from html import escape
from typing import Protocol

import httpx
import structlog

from checkout_payments.models import Order

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str


class NotificationPort(Protocol):
    def send(self, message: EmailMessage) -> bool: ...


class HttpNotifier:
    """Posts `{to, subject, html}` to an email-sending endpoint."""

    def __init__(self, url: str, api_key: str | None = None, timeout: float = 10.0,
                 transport: httpx.BaseTransport | None = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def send(self, message: EmailMessage) -> bool:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    self.url,
                    json={"to": message.to, "subject": message.subject, "html": message.html},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.error("notification_network_error", to=message.to, error=str(exc))
            return False

        if not response.is_success:
            logger.error("notification_rejected", to=message.to, status_code=response.status_code)
            return False
        return True


class LoggingNotifier:
    """Used when no email endpoint is configured."""

    def send(self, message: EmailMessage) -> bool:
        logger.info("notification_not_configured", to=message.to, subject=message.subject)
        return True


def _product_name(order: Order) -> str:
    items = order.items or []
    return items[0].get("name") if items and items[0].get("name") else "seu produto"


def _layout(body: str) -> str:
    return (
        '<!DOCTYPE html><html lang="pt-BR"><head><meta charset="UTF-8"></head>'
        '<body style="margin:0;padding:0;background-color:#f6f6f6;">'
        '<div style="max-width:600px;margin:0 auto;background:#ffffff;padding:20px;'
        'font-family:Arial,sans-serif;text-align:center;">'
        f"{body}"
        '<p style="font-size:11px;color:#aaaaaa;border-top:1px solid #eeeeee;padding-top:20px;">'
        "Este é um e-mail automático transacional e não deve ser respondido.</p>"
        "</div></body></html>"
    )


def payment_approved_email(order: Order) -> EmailMessage:
    html = _layout(
        f'<p style="font-size:24px;font-weight:bold;">Olá, {escape(order.customer_name)}!</p>'
        f'<p style="font-size:16px;color:#555555;">Seu pagamento para o produto '
        f"<strong>{escape(_product_name(order))}</strong> foi aprovado com sucesso!"
        "<br>Você já pode acessar seu produto e começar agora mesmo.</p>"
    )
    return EmailMessage(
        to=order.customer_email,
        subject="Pagamento Aprovado - Acesso Liberado!",
        html=html,
    )


def boleto_generated_email(order: Order, boleto_url: str, barcode: str) -> EmailMessage:
    html = _layout(
        f'<p style="font-size:24px;font-weight:bold;">Olá, {escape(order.customer_name)}!</p>'
        f'<p style="font-size:16px;color:#555555;">Seu boleto para o produto '
        f"<strong>{escape(_product_name(order))}</strong> foi gerado com sucesso!"
        "<br>Efetue o pagamento para liberar o acesso.</p>"
        f'<p style="font-family:monospace;word-break:break-all;">{escape(barcode)}</p>'
        f'<p><a href="{escape(boleto_url, quote=True)}">Visualizar boleto</a></p>'
    )
    return EmailMessage(
        to=order.customer_email,
        subject="Seu boleto foi gerado",
        html=html,
    )
