from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItem(CamelModel):
    name: str
    price: Decimal
    quantity: int = 1
    product_id: str | None = None
    type: Literal["main", "bump", "upsell"] = "main"


class CardData(CamelModel):
    number: str
    holder_name: str
    expiry_month: str
    expiry_year: str
    cvc: str


class PaymentRequest(CamelModel):
    checkout_id: str | None = None
    offer_id: str | None = None
    amount: Decimal
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    customer_cpf: str | None = None
    gateway_id: str
    payment_method: str
    items: list[LineItem] = Field(default_factory=list)
    card_data: CardData | None = None


class PixData(BaseModel):
    qr_code: str = ""
    qr_code_base64: str = ""


class BoletoData(BaseModel):
    barcode: str = ""
    url: str = ""


class PaymentResult(CamelModel):
    success: bool
    order_id: str | None = None
    status: str | None = None
    message: str | None = None
    error: str | None = None
    pix_data: PixData | None = None
    boleto_data: BoletoData | None = None


class StatusResponse(CamelModel):
    status: str
    provider_status: str | None = None


class WebhookAck(BaseModel):
    success: bool
    message: str


class WebhookLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    gateway_id: str | None = None
    event: str
    payload: str | None = None
    processed: bool
    message: str | None = None


# --- Mercado Pago payment shape ---

class TransactionData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    qr_code: str | None = None
    qr_code_base64: str | None = None
    ticket_url: str | None = None


class PointOfInteraction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_data: TransactionData | None = None


class ProviderPayment(BaseModel):
    """Parsed view of a provider payment; `raw` keeps the verbatim body."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    status_detail: str | None = None
    payment_method_id: str | None = None
    external_reference: str | None = None
    transaction_amount: Decimal | None = None
    point_of_interaction: PointOfInteraction | None = None
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        # The provider sends numeric ids
        return str(v)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "ProviderPayment":
        return cls.model_validate({**data, "raw": data})

    @property
    def transaction_data(self) -> TransactionData | None:
        if self.point_of_interaction is None:
            return None
        return self.point_of_interaction.transaction_data
