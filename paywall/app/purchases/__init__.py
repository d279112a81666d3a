"""Purchase domain package: entitlement records, the store contract, and orchestration."""

from .errors import (
    AlreadyOwnedError,
    AlreadyPendingError,
    ForbiddenError,
    GatewayError,
    InconsistentStateError,
    NotFoundError,
    PaymentFailedError,
    PaywallError,
    UnauthenticatedError,
)
from .models import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    ConfirmationOutcome,
    ConfirmationResult,
    CreateResult,
    Material,
    Purchase,
    PurchaseAuditEvent,
    PurchaseAuditEventType,
    PurchaseConflict,
    PurchaseStatus,
    UserRole,
    validate_transition,
)
from .store import EntitlementStore, InMemoryEntitlementStore
from .service import OwnershipInvalidator, PurchaseEventLogger, PurchaseOrchestrator

__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "AlreadyOwnedError",
    "AlreadyPendingError",
    "ConfirmationOutcome",
    "ConfirmationResult",
    "CreateResult",
    "EntitlementStore",
    "ForbiddenError",
    "GatewayError",
    "InMemoryEntitlementStore",
    "InconsistentStateError",
    "Material",
    "NotFoundError",
    "OwnershipInvalidator",
    "PaymentFailedError",
    "PaywallError",
    "Purchase",
    "PurchaseAuditEvent",
    "PurchaseAuditEventType",
    "PurchaseConflict",
    "PurchaseEventLogger",
    "PurchaseOrchestrator",
    "PurchaseStatus",
    "UnauthenticatedError",
    "UserRole",
    "validate_transition",
]
