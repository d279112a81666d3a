"""Tests for the Stripe adapter, run against a patched SDK."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

import pytest
import stripe

from paywall.app.gateway import GatewayStatus, StripePaymentGateway, StripeWebhookVerifier, to_minor_units
from paywall.app.gateway.stripe_gateway import classify_stripe_error, map_intent_status
from paywall.app.purchases import (
    ConfirmationOutcome,
    GatewayError,
    InMemoryEntitlementStore,
    Material,
    PurchaseOrchestrator,
    PurchaseStatus,
)


@pytest.fixture()
def gateway(monkeypatch):
    monkeypatch.setattr(stripe, "default_http_client", None)
    monkeypatch.setattr(stripe, "max_network_retries", 2)
    return StripePaymentGateway("sk_test_123", timeout_seconds=3.5)


def test_gateway_disables_sdk_retries_and_bounds_timeout(gateway):
    assert stripe.max_network_retries == 0
    assert isinstance(stripe.default_http_client, stripe.RequestsClient)


def test_create_transaction_sends_minor_units(monkeypatch, gateway):
    captured: Dict[str, Any] = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_123", "client_secret": "pi_123_secret_abc"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    transaction = gateway.create_transaction(Decimal("1500.00"), "USD", "Purchase of Notes")

    assert transaction.transaction_id == "pi_123"
    assert transaction.client_secret == "pi_123_secret_abc"
    assert captured["amount"] == 150000
    assert captured["currency"] == "usd"
    assert captured["description"] == "Purchase of Notes"
    assert captured["api_key"] == "sk_test_123"


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (stripe.APIConnectionError("connection reset"), True),
        (stripe.RateLimitError("slow down"), True),
        (stripe.APIError("server exploded"), True),
        (stripe.AuthenticationError("bad key"), False),
        (stripe.CardError("declined", None, "card_declined"), False),
        (stripe.InvalidRequestError("bad amount", "amount"), False),
    ],
)
def test_create_transaction_classifies_sdk_errors(monkeypatch, gateway, error, retryable):
    def fake_create(**kwargs):
        raise error

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    with pytest.raises(GatewayError) as exc_info:
        gateway.create_transaction(Decimal("10.00"), "usd", "Purchase")

    assert exc_info.value.retryable is retryable
    assert exc_info.value.__cause__ is error
    assert exc_info.value.payload["gateway_error"] == type(error).__name__


def test_unlisted_errors_fall_back_to_http_status():
    assert classify_stripe_error(stripe.StripeError("odd", http_status=503)).retryable is True
    assert classify_stripe_error(stripe.StripeError("odd")).retryable is True
    assert classify_stripe_error(stripe.StripeError("odd", http_status=409)).retryable is False


def test_get_status_maps_payment_intent(monkeypatch, gateway):
    def fake_retrieve(transaction_id, **kwargs):
        assert kwargs["api_key"] == "sk_test_123"
        return {"id": transaction_id, "status": "succeeded"}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

    assert gateway.get_status("pi_123") == GatewayStatus.SUCCEEDED


def test_get_status_wraps_sdk_errors(monkeypatch, gateway):
    def fake_retrieve(transaction_id, **kwargs):
        raise stripe.APIConnectionError("timeout")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

    with pytest.raises(GatewayError) as exc_info:
        gateway.get_status("pi_123")
    assert exc_info.value.retryable is True


@pytest.mark.parametrize(
    ("intent", "expected"),
    [
        ({"status": "succeeded"}, GatewayStatus.SUCCEEDED),
        ({"status": "canceled"}, GatewayStatus.CANCELED),
        ({"status": "processing"}, GatewayStatus.PROCESSING),
        ({"status": "requires_payment_method"}, GatewayStatus.PROCESSING),
        ({"status": "requires_payment_method", "last_payment_error": {"code": "card_declined"}}, GatewayStatus.PROCESSING),
        ({"status": "something_new"}, GatewayStatus.PROCESSING),
    ],
)
def test_map_intent_status(intent, expected):
    assert map_intent_status(intent) == expected


def test_to_minor_units_handles_zero_decimal_currencies():
    assert to_minor_units(Decimal("19.995"), "usd") == 2000
    assert to_minor_units(Decimal("1500"), "JPY") == 1500
    with pytest.raises(ValueError):
        to_minor_units(Decimal("-1"), "usd")


def test_webhook_verifier_extracts_payment_intent_id(monkeypatch):
    captured: Dict[str, Any] = {}

    def fake_construct_event(payload, signature, secret):
        captured.update(payload=payload, signature=signature, secret=secret)
        return {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_9"}}}

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct_event)

    verifier = StripeWebhookVerifier("whsec_1")

    assert verifier.transaction_id_from(b"{}", "t=1,v1=abc") == "pi_9"
    assert captured == {"payload": b"{}", "signature": "t=1,v1=abc", "secret": "whsec_1"}


def test_webhook_verifier_ignores_other_events(monkeypatch):
    monkeypatch.setattr(
        stripe.Webhook,
        "construct_event",
        lambda payload, signature, secret: {"id": "evt_2", "type": "customer.created", "data": {"object": {}}},
    )

    assert StripeWebhookVerifier("whsec_1").transaction_id_from(b"{}", "sig") is None


def test_webhook_verifier_rejects_bad_signatures(monkeypatch):
    def fake_construct_event(payload, signature, secret):
        raise stripe.SignatureVerificationError("mismatch", signature)

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct_event)
    verifier = StripeWebhookVerifier("whsec_1")

    with pytest.raises(ValueError):
        verifier.transaction_id_from(b"{}", "sig")
    with pytest.raises(ValueError):
        verifier.transaction_id_from(b"{}", None)


class _Catalog:
    def __init__(self, material: Material) -> None:
        self._material = material

    def get_material(self, material_id):
        return self._material if material_id == self._material.material_id else None

    def list_materials(self):
        return [self._material]


class _Users:
    def user_exists(self, user_id):
        return user_id == "u1"


class _Events:
    def __init__(self) -> None:
        self.events = []

    def log(self, event):
        self.events.append(event)


class _Invalidator:
    def invalidate_ownership(self, user_id, material_id):
        pass


def test_declined_attempt_then_success_completes_purchase(monkeypatch, gateway):
    intents: Dict[str, Dict[str, Any]] = {}

    def fake_create(**kwargs):
        intents["pi_retry"] = {"id": "pi_retry", "status": "requires_payment_method"}
        return {"id": "pi_retry", "client_secret": "pi_retry_secret"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda transaction_id, **kwargs: intents[transaction_id])

    store = InMemoryEntitlementStore()
    orchestrator = PurchaseOrchestrator(
        store=store,
        gateway=gateway,
        materials=_Catalog(Material(material_id="m1", title="Notes", price=Decimal("15.00"), content_ref="m1.pdf")),
        users=_Users(),
        event_logger=_Events(),
        ownership_invalidator=_Invalidator(),
    )

    purchase = orchestrator.initiate("u1", "m1")
    assert purchase.external_transaction_id == "pi_retry"

    intents["pi_retry"] = {
        "id": "pi_retry",
        "status": "requires_payment_method",
        "last_payment_error": {"code": "card_declined"},
    }
    declined = orchestrator.confirm("pi_retry", user_id="u1")
    assert declined.outcome == ConfirmationOutcome.PAYMENT_PENDING
    assert declined.purchase.status == PurchaseStatus.PROCESSING
    assert store.is_owned("u1", "m1") is False

    intents["pi_retry"] = {"id": "pi_retry", "status": "succeeded"}
    settled = orchestrator.confirm("pi_retry", user_id="u1")
    assert settled.outcome == ConfirmationOutcome.COMPLETED
    assert settled.purchase.status == PurchaseStatus.COMPLETED
    assert store.is_owned("u1", "m1") is True
