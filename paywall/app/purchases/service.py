"""Purchase orchestration: initiation, gateway reconciliation, and refunds."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence
from uuid import uuid4

from ..gateway.base import GatewayStatus, PaymentGateway
from .errors import (
    AlreadyOwnedError,
    AlreadyPendingError,
    GatewayError,
    InconsistentStateError,
    NotFoundError,
    PaymentFailedError,
)
from .models import (
    ConfirmationOutcome,
    ConfirmationResult,
    Purchase,
    PurchaseAuditEvent,
    PurchaseAuditEventType,
    PurchaseConflict,
    PurchaseStatus,
)
from .store import EntitlementStore

if TYPE_CHECKING:
    from ..materials.catalog import MaterialCatalog, UserDirectory

logger = logging.getLogger("paywall.purchases")


class PurchaseEventLogger(Protocol):
    """Captures structured purchase audit events."""

    def log(self, event: PurchaseAuditEvent) -> None:
        ...


class OwnershipInvalidator(Protocol):
    """Drops cached ownership answers affected by a status change."""

    def invalidate_ownership(self, user_id: str, material_id: str) -> None:
        ...


_GATEWAY_TARGETS: Dict[GatewayStatus, PurchaseStatus] = {
    GatewayStatus.SUCCEEDED: PurchaseStatus.COMPLETED,
    GatewayStatus.PROCESSING: PurchaseStatus.PROCESSING,
    GatewayStatus.FAILED: PurchaseStatus.FAILED,
    GatewayStatus.CANCELED: PurchaseStatus.FAILED,
}

_FINAL_OUTCOMES: Dict[PurchaseStatus, ConfirmationOutcome] = {
    PurchaseStatus.COMPLETED: ConfirmationOutcome.COMPLETED,
    PurchaseStatus.FAILED: ConfirmationOutcome.PAYMENT_FAILED,
    PurchaseStatus.REFUNDED: ConfirmationOutcome.REFUNDED,
}

_AUDIT_TYPES: Dict[PurchaseStatus, PurchaseAuditEventType] = {
    PurchaseStatus.CREATED: PurchaseAuditEventType.INITIATED,
    PurchaseStatus.PROCESSING: PurchaseAuditEventType.PROCESSING,
    PurchaseStatus.COMPLETED: PurchaseAuditEventType.COMPLETED,
    PurchaseStatus.FAILED: PurchaseAuditEventType.PAYMENT_FAILED,
    PurchaseStatus.REFUNDED: PurchaseAuditEventType.REFUNDED,
}


@dataclass(slots=True)
class PurchaseOrchestrator:
    """Drives purchases from initiation through gateway reconciliation.

    Uniqueness of active purchases is delegated to the store's atomic
    create; every status write is a compare-and-swap so concurrent
    confirmations of one transaction converge on a single winner. No lock is
    held while the gateway is being called.
    """

    store: EntitlementStore
    gateway: PaymentGateway
    materials: MaterialCatalog
    users: UserDirectory
    event_logger: PurchaseEventLogger
    ownership_invalidator: OwnershipInvalidator
    currency: str = "usd"
    pending_ttl: timedelta = timedelta(minutes=15)
    max_transition_attempts: int = 4

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def initiate(self, user_id: str, material_id: str) -> Purchase:
        """Reserve the (user, material) pair and open a gateway transaction."""

        if not self.users.user_exists(user_id):
            raise NotFoundError(f"User {user_id} not found", detail={"user_id": user_id})
        material = self.materials.get_material(material_id)
        if material is None:
            raise NotFoundError(f"Material {material_id} not found", detail={"material_id": material_id})

        now = self._now()
        placeholder = Purchase(
            purchase_id=f"pur_{uuid4().hex}",
            user_id=user_id,
            material_id=material_id,
            price_charged=material.price,
            currency=self.currency,
            status=PurchaseStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        result = self.store.create_if_absent(placeholder)
        if result.conflict == PurchaseConflict.ACTIVE_EXISTS and self._is_stale(result.existing, now):
            # A placeholder older than pending_ttl no longer reserves the pair.
            if self._expire(result.existing) is not None:
                logger.info("Expired stale pending purchase %s during initiate", result.existing.purchase_id)
            result = self.store.create_if_absent(placeholder)
        if result.conflict == PurchaseConflict.COMPLETED_EXISTS:
            raise AlreadyOwnedError(
                "Material already purchased by user",
                detail={"purchase_id": result.existing.purchase_id},
            )
        if result.conflict == PurchaseConflict.ACTIVE_EXISTS:
            raise AlreadyPendingError(
                "A purchase for this material is already in progress",
                detail={"purchase_id": result.existing.purchase_id, "status": result.existing.status.value},
            )
        pending = result.purchase

        try:
            transaction = self.gateway.create_transaction(
                pending.price_charged,
                pending.currency,
                f"Purchase of {material.title}",
            )
        except GatewayError as exc:
            self._abandon(pending, exc)
            raise
        except Exception as exc:
            error = GatewayError(f"Payment gateway call failed: {exc}", retryable=True)
            self._abandon(pending, error)
            raise error from exc

        created = self._transition(
            pending,
            PurchaseStatus.CREATED,
            external_transaction_id=transaction.transaction_id,
            external_client_secret=transaction.client_secret,
        )
        if created is None:
            logger.warning(
                "Purchase %s left PENDING while gateway transaction %s was created",
                pending.purchase_id,
                transaction.transaction_id,
            )
            raise GatewayError(
                "Purchase expired before the payment gateway responded",
                detail={"purchase_id": pending.purchase_id},
                retryable=True,
            )
        return created

    def confirm(self, transaction_id: str, *, user_id: Optional[str] = None) -> ConfirmationResult:
        """Reconcile a purchase with the gateway's view of its transaction.

        Safe to call any number of times, concurrently. Final purchases are
        returned unchanged; ``PAYMENT_PENDING`` means the caller should ask
        again later. Raises :class:`PaymentFailedError` only for the call that
        records the failure.
        """

        purchase = self.store.get_by_transaction_id(transaction_id)
        if purchase is None or (user_id is not None and purchase.user_id != user_id):
            raise NotFoundError(
                f"Purchase not found for transaction {transaction_id}",
                detail={"transaction_id": transaction_id},
            )
        if purchase.status.is_terminal:
            return self._replayed(purchase)

        gateway_status = self.gateway.get_status(transaction_id)
        target = _GATEWAY_TARGETS[gateway_status]

        current = purchase
        for _ in range(self.max_transition_attempts):
            if current.status.is_terminal:
                if _FINAL_OUTCOMES[current.status] != _FINAL_OUTCOMES.get(target):
                    logger.warning(
                        "Gateway reports %s for %s but purchase %s is already %s",
                        gateway_status.value,
                        transaction_id,
                        current.purchase_id,
                        current.status.value,
                    )
                return self._replayed(current)
            if current.status == target:
                return ConfirmationResult(purchase=current, outcome=ConfirmationOutcome.PAYMENT_PENDING)

            updated = self._transition(current, target)
            if updated is not None:
                return self._finish_confirmation(updated)

            reread = self.store.get(current.purchase_id)
            if reread is None:
                break
            current = reread

        error = InconsistentStateError(
            f"Could not settle purchase {purchase.purchase_id} for transaction {transaction_id}",
            detail={"purchase_id": purchase.purchase_id},
        )
        logger.critical("%s", error.message, extra={"purchase_id": purchase.purchase_id})
        raise error

    def refund(self, purchase_id: str) -> Purchase:
        """Mark a completed purchase as refunded; ownership ends immediately."""

        purchase = self.store.get(purchase_id)
        if purchase is None:
            raise NotFoundError(f"Purchase {purchase_id} not found", detail={"purchase_id": purchase_id})
        if purchase.status == PurchaseStatus.REFUNDED:
            return purchase
        if purchase.status != PurchaseStatus.COMPLETED:
            raise InconsistentStateError(
                f"Only completed purchases can be refunded; {purchase_id} is {purchase.status.value}",
                detail={"purchase_id": purchase_id, "current_status": purchase.status.value},
            )
        updated = self._transition(purchase, PurchaseStatus.REFUNDED)
        if updated is None:
            raise InconsistentStateError(
                f"Purchase {purchase_id} changed status during refund",
                detail={"purchase_id": purchase_id},
            )
        return updated

    def expire_stale_pending(self, *, now: Optional[datetime] = None) -> List[Purchase]:
        """Fail PENDING placeholders whose initiating request never finished."""

        cutoff = (now or self._now()) - self.pending_ttl
        expired: List[Purchase] = []
        for purchase in self.store.list_pending_before(cutoff):
            updated = self._expire(purchase)
            if updated is not None:
                expired.append(updated)
        if expired:
            logger.info("Expired %s stale pending purchases", len(expired))
        return expired

    def is_owned(self, user_id: str, material_id: str) -> bool:
        return self.store.is_owned(user_id, material_id)

    def get_purchase(self, purchase_id: str) -> Purchase:
        purchase = self.store.get(purchase_id)
        if purchase is None:
            raise NotFoundError(f"Purchase {purchase_id} not found", detail={"purchase_id": purchase_id})
        return purchase

    def list_user_purchases(self, user_id: str) -> Sequence[Purchase]:
        return self.store.list_for_user(user_id)

    def list_all_purchases(self, *, limit: int = 500) -> Sequence[Purchase]:
        return self.store.list_all(limit=limit)

    def _transition(
        self,
        purchase: Purchase,
        next_status: PurchaseStatus,
        *,
        external_transaction_id: Optional[str] = None,
        external_client_secret: Optional[str] = None,
    ) -> Optional[Purchase]:
        try:
            updated = self.store.transition_status(
                purchase.purchase_id,
                purchase.status,
                next_status,
                external_transaction_id=external_transaction_id,
                external_client_secret=external_client_secret,
            )
        except InconsistentStateError:
            logger.critical(
                "Rejected backward transition for purchase %s: %s -> %s",
                purchase.purchase_id,
                purchase.status.value,
                next_status.value,
                extra={"purchase_id": purchase.purchase_id},
            )
            raise
        if updated is None:
            return None

        audit_type = _AUDIT_TYPES.get(next_status)
        if audit_type is not None:
            metadata = {"from_status": purchase.status.value}
            if updated.external_transaction_id:
                metadata["transaction_id"] = updated.external_transaction_id
            self.event_logger.log(
                PurchaseAuditEvent(
                    event_type=audit_type,
                    purchase_id=updated.purchase_id,
                    user_id=updated.user_id,
                    material_id=updated.material_id,
                    metadata=metadata,
                )
            )
        if next_status in {PurchaseStatus.COMPLETED, PurchaseStatus.REFUNDED}:
            self.ownership_invalidator.invalidate_ownership(updated.user_id, updated.material_id)
        return updated

    def _is_stale(self, purchase: Purchase, now: datetime) -> bool:
        return purchase.status == PurchaseStatus.PENDING and purchase.created_at < now - self.pending_ttl

    def _expire(self, purchase: Purchase) -> Optional[Purchase]:
        updated = self.store.transition_status(
            purchase.purchase_id, PurchaseStatus.PENDING, PurchaseStatus.FAILED
        )
        if updated is not None:
            self.event_logger.log(
                PurchaseAuditEvent(
                    event_type=PurchaseAuditEventType.EXPIRED,
                    purchase_id=updated.purchase_id,
                    user_id=updated.user_id,
                    material_id=updated.material_id,
                )
            )
        return updated

    def _abandon(self, pending: Purchase, error: GatewayError) -> None:
        logger.warning(
            "Gateway transaction for purchase %s failed retryable=%s: %s",
            pending.purchase_id,
            error.retryable,
            error.message,
        )
        failed = self.store.transition_status(
            pending.purchase_id, PurchaseStatus.PENDING, PurchaseStatus.FAILED
        )
        if failed is not None:
            self.event_logger.log(
                PurchaseAuditEvent(
                    event_type=PurchaseAuditEventType.GATEWAY_FAILED,
                    purchase_id=failed.purchase_id,
                    user_id=failed.user_id,
                    material_id=failed.material_id,
                    metadata={"retryable": str(error.retryable).lower()},
                )
            )

    def _finish_confirmation(self, updated: Purchase) -> ConfirmationResult:
        if updated.status == PurchaseStatus.COMPLETED:
            return ConfirmationResult(purchase=updated, outcome=ConfirmationOutcome.COMPLETED)
        if updated.status == PurchaseStatus.FAILED:
            raise PaymentFailedError(
                "Payment failed or was canceled",
                detail={"purchase_id": updated.purchase_id},
                purchase=updated,
            )
        return ConfirmationResult(purchase=updated, outcome=ConfirmationOutcome.PAYMENT_PENDING)

    def _replayed(self, purchase: Purchase) -> ConfirmationResult:
        return ConfirmationResult(
            purchase=purchase,
            outcome=_FINAL_OUTCOMES[purchase.status],
            replayed=True,
        )


__all__ = ["OwnershipInvalidator", "PurchaseEventLogger", "PurchaseOrchestrator"]
