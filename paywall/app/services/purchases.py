"""Application wiring for the purchase orchestrator and access gate."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ...app_context import get_config
from ..access import AccessControlGate, InMemoryOwnershipCache, OwnershipReader
from ..gateway import LocalSandboxPaymentGateway, PaymentGateway, StripePaymentGateway, StripeWebhookVerifier
from ..materials import (
    ContentStore,
    FileSystemContentStore,
    MaterialCatalog,
    PostgresMaterialCatalog,
    PostgresUserDirectory,
)
from ..purchases import EntitlementStore, PurchaseAuditEvent, PurchaseEventLogger, PurchaseOrchestrator
from ..purchases.repository import PostgresEntitlementStore

logger = logging.getLogger("paywall.purchases")


class LoggingPurchaseEventLogger(PurchaseEventLogger):
    """Forwards purchase audit events to the application logger."""

    def log(self, event: PurchaseAuditEvent) -> None:
        logger.info(
            "Purchase event %s purchase=%s user=%s material=%s metadata=%s",
            event.event_type.value,
            event.purchase_id,
            event.user_id,
            event.material_id,
            event.metadata,
            extra={"purchase_event": event.event_type.value, "purchase_id": event.purchase_id},
        )


@lru_cache(maxsize=1)
def get_entitlement_store() -> EntitlementStore:
    return PostgresEntitlementStore()


@lru_cache(maxsize=1)
def get_ownership_reader() -> OwnershipReader:
    config = get_config()
    ttl = config.ownership_cache_ttl_seconds
    if ttl:
        logger.warning("Ownership answers may be up to %s seconds stale", ttl)
    return OwnershipReader(
        get_entitlement_store(),
        cache=InMemoryOwnershipCache() if ttl else None,
        ttl_seconds=ttl,
    )


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    config = get_config()
    if config.uses_stripe:
        if not config.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY must be set when PAYMENT_GATEWAY=stripe")
        return StripePaymentGateway(config.stripe_secret_key, timeout_seconds=config.gateway_timeout_seconds)
    logger.warning("Using the local sandbox payment gateway; no money will move")
    return LocalSandboxPaymentGateway(auto_succeed=config.sandbox_auto_succeed)


@lru_cache(maxsize=1)
def get_material_catalog() -> MaterialCatalog:
    return PostgresMaterialCatalog()


@lru_cache(maxsize=1)
def get_content_store() -> ContentStore:
    return FileSystemContentStore(get_config().content_root)


@lru_cache(maxsize=1)
def get_webhook_verifier() -> Optional[StripeWebhookVerifier]:
    secret = get_config().stripe_webhook_secret
    return StripeWebhookVerifier(secret) if secret else None


@lru_cache(maxsize=1)
def get_purchase_orchestrator() -> PurchaseOrchestrator:
    config = get_config()
    return PurchaseOrchestrator(
        store=get_entitlement_store(),
        gateway=get_payment_gateway(),
        materials=get_material_catalog(),
        users=PostgresUserDirectory(),
        event_logger=LoggingPurchaseEventLogger(),
        ownership_invalidator=get_ownership_reader(),
        currency=config.currency,
        pending_ttl=config.pending_purchase_ttl,
    )


@lru_cache(maxsize=1)
def get_access_gate() -> AccessControlGate:
    return AccessControlGate(get_ownership_reader())


__all__ = [
    "LoggingPurchaseEventLogger",
    "get_access_gate",
    "get_content_store",
    "get_entitlement_store",
    "get_material_catalog",
    "get_payment_gateway",
    "get_purchase_orchestrator",
    "get_webhook_verifier",
]
