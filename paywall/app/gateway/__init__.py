"""Payment gateway adapters."""

from .base import GatewayStatus, GatewayTransaction, PaymentGateway, to_minor_units
from .sandbox import LocalSandboxPaymentGateway
from .stripe_gateway import StripePaymentGateway, StripeWebhookVerifier

__all__ = [
    "GatewayStatus",
    "GatewayTransaction",
    "LocalSandboxPaymentGateway",
    "PaymentGateway",
    "StripePaymentGateway",
    "StripeWebhookVerifier",
    "to_minor_units",
]
