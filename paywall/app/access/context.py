"""Explicit per-request access context."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .credentials import CredentialClaims


class OperationClass(str, Enum):
    """How an operation is authorized for non-admin callers."""

    ROLE_ONLY = "role_only"
    OWNERSHIP_GATED = "ownership_gated"
    ADMIN_ONLY = "admin_only"


class Operation(str, Enum):
    """Protected operations exposed by the API."""

    LIST_MATERIALS = "list_materials"
    CHECK_OWNERSHIP = "check_ownership"
    DOWNLOAD_CONTENT = "download_content"
    INITIATE_PURCHASE = "initiate_purchase"
    CONFIRM_PURCHASE = "confirm_purchase"
    LIST_OWN_PURCHASES = "list_own_purchases"
    VIEW_PURCHASE = "view_purchase"
    LIST_ALL_PURCHASES = "list_all_purchases"
    REFUND_PURCHASE = "refund_purchase"
    EXPIRE_PENDING = "expire_pending"

    @property
    def operation_class(self) -> OperationClass:
        return OPERATION_CLASSES[self]


OPERATION_CLASSES: Dict[Operation, OperationClass] = {
    Operation.LIST_MATERIALS: OperationClass.ROLE_ONLY,
    Operation.CHECK_OWNERSHIP: OperationClass.ROLE_ONLY,
    Operation.DOWNLOAD_CONTENT: OperationClass.OWNERSHIP_GATED,
    Operation.INITIATE_PURCHASE: OperationClass.ROLE_ONLY,
    Operation.CONFIRM_PURCHASE: OperationClass.ROLE_ONLY,
    Operation.LIST_OWN_PURCHASES: OperationClass.ROLE_ONLY,
    Operation.VIEW_PURCHASE: OperationClass.ROLE_ONLY,
    Operation.LIST_ALL_PURCHASES: OperationClass.ADMIN_ONLY,
    Operation.REFUND_PURCHASE: OperationClass.ADMIN_ONLY,
    Operation.EXPIRE_PENDING: OperationClass.ADMIN_ONLY,
}


@dataclass(frozen=True)
class AccessContext:
    """Everything the gate needs to decide one request.

    ``claims`` is ``None`` when no credential was presented or it failed to
    decode. ``material_id`` is required for ownership-gated operations.
    """

    claims: Optional[CredentialClaims]
    operation: Operation
    material_id: Optional[str] = None


__all__ = ["AccessContext", "OPERATION_CLASSES", "Operation", "OperationClass"]
