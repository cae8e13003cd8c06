class CheckoutError(Exception):
    """Base class for payment orchestration failures."""

    code = "checkout_error"

    def __init__(self, message: str, order_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id


class ConfigurationError(CheckoutError):
    """Missing or invalid gateway credentials."""

    code = "configuration_error"


class ValidationError(CheckoutError):
    """Request rejected before anything was dispatched."""

    code = "validation_error"


class GatewayError(CheckoutError):
    """The provider answered with a non-success response."""

    code = "gateway_error"


class TokenizationError(GatewayError):
    code = "tokenization_error"


class GatewayTimeoutError(CheckoutError):
    """A bounded gateway call expired. The provider-side outcome is unknown."""

    code = "gateway_timeout"


class TokenizationTimeoutError(GatewayTimeoutError):
    """Tokenization expired, so no provider payment can exist for the order."""


class NotFoundError(CheckoutError):
    code = "not_found"


class SignatureError(CheckoutError):
    code = "invalid_signature"


class PersistenceError(CheckoutError):
    code = "persistence_error"
