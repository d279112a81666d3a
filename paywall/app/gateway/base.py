"""Payment gateway contract shared by all adapters."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict

# Currencies Stripe settles without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


class GatewayStatus(str, Enum):
    """Normalized status of a remote gateway transaction."""

    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"
    CANCELED = "canceled"


class GatewayTransaction(BaseModel):
    """Handle returned by the gateway for a newly created transaction."""

    transaction_id: str
    client_secret: str

    model_config = ConfigDict(frozen=True)


class PaymentGateway(Protocol):
    """Remote payment processor integration.

    Both calls are blocking network requests with a bounded timeout and
    raise :class:`~paywall.app.purchases.errors.GatewayError` classified as
    retryable or fatal. Neither call is assumed to be idempotent remotely.
    """

    def create_transaction(self, amount: Decimal, currency: str, description: str) -> GatewayTransaction:
        ...

    def get_status(self, transaction_id: str) -> GatewayStatus:
        ...


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount into the integer the gateway expects."""

    if amount < 0:
        raise ValueError("amount must be non-negative")
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


__all__ = [
    "GatewayStatus",
    "GatewayTransaction",
    "PaymentGateway",
    "ZERO_DECIMAL_CURRENCIES",
    "to_minor_units",
]
