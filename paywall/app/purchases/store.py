"""Entitlement store contract and an in-memory implementation."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence

from .models import CreateResult, Purchase, PurchaseStatus, validate_transition


class EntitlementStore(Protocol):
    """Durable record of purchase attempts and ownership.

    Implementations guarantee that :meth:`create_if_absent` checks for an
    active purchase and inserts the new row as one atomic step, and that
    :meth:`transition_status` only writes when the stored status still equals
    ``expected``.
    """

    def create_if_absent(self, purchase: Purchase) -> CreateResult:
        ...

    def transition_status(
        self,
        purchase_id: str,
        expected: PurchaseStatus,
        next_status: PurchaseStatus,
        *,
        external_transaction_id: Optional[str] = None,
        external_client_secret: Optional[str] = None,
    ) -> Optional[Purchase]:
        ...

    def get(self, purchase_id: str) -> Optional[Purchase]:
        ...

    def get_by_transaction_id(self, transaction_id: str) -> Optional[Purchase]:
        ...

    def is_owned(self, user_id: str, material_id: str) -> bool:
        ...

    def list_for_user(self, user_id: str) -> Sequence[Purchase]:
        ...

    def list_all(self, *, limit: int = 500) -> Sequence[Purchase]:
        ...

    def list_pending_before(self, cutoff: datetime) -> Sequence[Purchase]:
        ...


class InMemoryEntitlementStore:
    """Lock protected store suitable for tests and local development."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._purchases: Dict[str, Purchase] = {}
        self._transaction_index: Dict[str, str] = {}

    def _active_for_pair(self, user_id: str, material_id: str) -> Optional[Purchase]:
        for purchase in self._purchases.values():
            if (
                purchase.user_id == user_id
                and purchase.material_id == material_id
                and purchase.status.is_active
            ):
                return purchase
        return None

    def create_if_absent(self, purchase: Purchase) -> CreateResult:
        with self._lock:
            existing = self._active_for_pair(purchase.user_id, purchase.material_id)
            if existing is not None:
                return CreateResult.conflicting(existing)
            if purchase.purchase_id in self._purchases:
                raise ValueError(f"Duplicate purchase id {purchase.purchase_id}")
            self._purchases[purchase.purchase_id] = purchase
            if purchase.external_transaction_id:
                self._transaction_index[purchase.external_transaction_id] = purchase.purchase_id
            return CreateResult.created(purchase)

    def transition_status(
        self,
        purchase_id: str,
        expected: PurchaseStatus,
        next_status: PurchaseStatus,
        *,
        external_transaction_id: Optional[str] = None,
        external_client_secret: Optional[str] = None,
    ) -> Optional[Purchase]:
        validate_transition(expected, next_status)
        with self._lock:
            current = self._purchases.get(purchase_id)
            if current is None or current.status != expected:
                return None
            update: Dict[str, object] = {
                "status": next_status,
                "updated_at": datetime.now(timezone.utc),
            }
            if external_transaction_id is not None:
                update["external_transaction_id"] = external_transaction_id
            if external_client_secret is not None:
                update["external_client_secret"] = external_client_secret
            updated = current.model_copy(update=update)
            self._purchases[purchase_id] = updated
            if updated.external_transaction_id:
                self._transaction_index[updated.external_transaction_id] = purchase_id
            return updated

    def get(self, purchase_id: str) -> Optional[Purchase]:
        with self._lock:
            return self._purchases.get(purchase_id)

    def get_by_transaction_id(self, transaction_id: str) -> Optional[Purchase]:
        with self._lock:
            purchase_id = self._transaction_index.get(transaction_id)
            return self._purchases.get(purchase_id) if purchase_id else None

    def is_owned(self, user_id: str, material_id: str) -> bool:
        with self._lock:
            return any(
                purchase.user_id == user_id
                and purchase.material_id == material_id
                and purchase.is_owned
                for purchase in self._purchases.values()
            )

    def list_for_user(self, user_id: str) -> List[Purchase]:
        with self._lock:
            matching = [p for p in self._purchases.values() if p.user_id == user_id]
        return sorted(matching, key=lambda p: p.created_at, reverse=True)

    def list_all(self, *, limit: int = 500) -> List[Purchase]:
        with self._lock:
            purchases = list(self._purchases.values())
        return sorted(purchases, key=lambda p: p.created_at, reverse=True)[:limit]

    def list_pending_before(self, cutoff: datetime) -> List[Purchase]:
        with self._lock:
            return [
                purchase
                for purchase in self._purchases.values()
                if purchase.status == PurchaseStatus.PENDING and purchase.created_at < cutoff
            ]


__all__ = ["EntitlementStore", "InMemoryEntitlementStore"]
