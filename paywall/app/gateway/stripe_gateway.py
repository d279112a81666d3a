"""Stripe PaymentIntents adapter."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

import stripe

from ..purchases.errors import GatewayError
from .base import GatewayStatus, GatewayTransaction, to_minor_units

logger = logging.getLogger("paywall.gateway")

_RETRYABLE_ERRORS = (
    stripe.APIConnectionError,
    stripe.APIError,
    stripe.RateLimitError,
)

_FATAL_ERRORS = (
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.CardError,
    stripe.InvalidRequestError,
)

_PROCESSING_STATUSES = frozenset(
    {
        "processing",
        "requires_action",
        "requires_confirmation",
        "requires_capture",
        "requires_payment_method",
    }
)


def classify_stripe_error(error: stripe.StripeError) -> GatewayError:
    """Translate a Stripe SDK error into a classified :class:`GatewayError`."""

    message = getattr(error, "user_message", None) or str(error) or error.__class__.__name__
    if isinstance(error, _FATAL_ERRORS):
        retryable = False
    elif isinstance(error, _RETRYABLE_ERRORS):
        retryable = True
    else:
        http_status = getattr(error, "http_status", None)
        retryable = http_status is None or http_status >= 500
    return GatewayError(
        f"Payment gateway error: {message}",
        detail={"gateway": "stripe", "gateway_error": error.__class__.__name__},
        retryable=retryable,
    )


def map_intent_status(intent: stripe.PaymentIntent) -> GatewayStatus:
    """Map a PaymentIntent onto the normalized gateway status.

    A declined attempt leaves the intent in ``requires_payment_method`` and the
    customer may retry on the same client secret, so only ``canceled`` is final.
    """

    status = intent.get("status")
    if status == "succeeded":
        return GatewayStatus.SUCCEEDED
    if status == "canceled":
        return GatewayStatus.CANCELED
    if status in _PROCESSING_STATUSES:
        return GatewayStatus.PROCESSING
    logger.warning("Unknown PaymentIntent status %s for %s", status, intent.get("id"))
    return GatewayStatus.PROCESSING


class StripePaymentGateway:
    """Creates and inspects PaymentIntents with a bounded request timeout."""

    def __init__(self, api_key: str, *, timeout_seconds: float = 10.0) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._api_key = api_key
        # A timed-out create must surface as an error, never be resent.
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def create_transaction(self, amount: Decimal, currency: str, description: str) -> GatewayTransaction:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._api_key,
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                description=description,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            error = classify_stripe_error(exc)
            logger.warning(
                "Stripe PaymentIntent creation failed retryable=%s: %s",
                error.retryable,
                exc,
            )
            raise error from exc

        logger.info("Created PaymentIntent %s amount=%s %s", intent["id"], amount, currency)
        return GatewayTransaction(transaction_id=intent["id"], client_secret=intent["client_secret"])

    def get_status(self, transaction_id: str) -> GatewayStatus:
        try:
            intent = stripe.PaymentIntent.retrieve(transaction_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            error = classify_stripe_error(exc)
            logger.warning(
                "Stripe PaymentIntent lookup failed for %s retryable=%s: %s",
                transaction_id,
                error.retryable,
                exc,
            )
            raise error from exc
        return map_intent_status(intent)


class StripeWebhookVerifier:
    """Validates Stripe webhook signatures and extracts the PaymentIntent id."""

    HANDLED_EVENT_PREFIX = "payment_intent."

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("secret must be provided")
        self._secret = secret

    def transaction_id_from(self, payload: bytes, signature: Optional[str]) -> Optional[str]:
        """Return the PaymentIntent id for ``payment_intent.*`` events, else ``None``.

        Raises ``ValueError`` when the signature or payload is invalid.
        """

        if not signature:
            raise ValueError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._secret)
        except stripe.SignatureVerificationError as exc:
            raise ValueError("Invalid webhook signature") from exc

        event_type = str(event["type"])
        if not event_type.startswith(self.HANDLED_EVENT_PREFIX):
            logger.debug("Ignoring Stripe event %s of type %s", event["id"], event_type)
            return None
        return str(event["data"]["object"]["id"])


__all__ = [
    "StripePaymentGateway",
    "StripeWebhookVerifier",
    "classify_stripe_error",
    "map_intent_status",
]
