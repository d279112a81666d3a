"""Domain models for purchases and entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InconsistentStateError


class PurchaseStatus(str, Enum):
    """Lifecycle status for a purchase."""

    PENDING = "pending"
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Return ``True`` when the status blocks a new purchase for the same pair."""
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES: FrozenSet[PurchaseStatus] = frozenset(
    {
        PurchaseStatus.PENDING,
        PurchaseStatus.CREATED,
        PurchaseStatus.PROCESSING,
        PurchaseStatus.COMPLETED,
    }
)

TERMINAL_STATUSES: FrozenSet[PurchaseStatus] = frozenset(
    {PurchaseStatus.COMPLETED, PurchaseStatus.FAILED, PurchaseStatus.REFUNDED}
)

ALLOWED_TRANSITIONS: Dict[PurchaseStatus, FrozenSet[PurchaseStatus]] = {
    PurchaseStatus.PENDING: frozenset({PurchaseStatus.CREATED, PurchaseStatus.FAILED}),
    PurchaseStatus.CREATED: frozenset(
        {PurchaseStatus.PROCESSING, PurchaseStatus.COMPLETED, PurchaseStatus.FAILED}
    ),
    PurchaseStatus.PROCESSING: frozenset({PurchaseStatus.COMPLETED, PurchaseStatus.FAILED}),
    PurchaseStatus.COMPLETED: frozenset({PurchaseStatus.REFUNDED}),
    PurchaseStatus.FAILED: frozenset(),
    PurchaseStatus.REFUNDED: frozenset(),
}


def validate_transition(current: PurchaseStatus, next_status: PurchaseStatus) -> None:
    """Raise :class:`InconsistentStateError` unless ``current -> next_status`` moves forward."""

    if next_status not in ALLOWED_TRANSITIONS[current]:
        raise InconsistentStateError(
            f"Illegal purchase status transition {current.value} -> {next_status.value}",
            detail={"current_status": current.value, "requested_status": next_status.value},
        )


class UserRole(str, Enum):
    """Roles carried by credential claims."""

    USER = "user"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> "UserRole":
        """Accept ``user``/``admin`` as well as the ``ROLE_USER`` style spellings."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unsupported role value {value!r}")
        normalized = value.strip().lower()
        if normalized.startswith("role_"):
            normalized = normalized[len("role_"):]
        return cls(normalized)


class Material(BaseModel):
    """Purchasable material as exposed by the metadata collaborator."""

    material_id: str
    title: str
    price: Decimal = Field(ge=0)
    content_ref: str
    filename: Optional[str] = None
    content_type: str = "application/pdf"

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def download_name(self) -> str:
        return self.filename or self.content_ref.rsplit("/", 1)[-1]


class Purchase(BaseModel):
    """One user's attempt to acquire one material."""

    purchase_id: str
    user_id: str
    material_id: str
    price_charged: Decimal = Field(ge=0, description="Material price snapshotted at initiation")
    currency: str = Field(min_length=3, max_length=3)
    status: PurchaseStatus = PurchaseStatus.PENDING
    external_transaction_id: Optional[str] = None
    external_client_secret: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def is_owned(self) -> bool:
        return self.status == PurchaseStatus.COMPLETED


class PurchaseConflict(str, Enum):
    """Reason an atomic create was refused."""

    ACTIVE_EXISTS = "active_exists"
    COMPLETED_EXISTS = "completed_exists"


class CreateResult(BaseModel):
    """Outcome of :meth:`EntitlementStore.create_if_absent`."""

    purchase: Optional[Purchase] = None
    conflict: Optional[PurchaseConflict] = None
    existing: Optional[Purchase] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def created(cls, purchase: Purchase) -> "CreateResult":
        return cls(purchase=purchase)

    @classmethod
    def conflicting(cls, existing: Purchase) -> "CreateResult":
        conflict = (
            PurchaseConflict.COMPLETED_EXISTS
            if existing.status == PurchaseStatus.COMPLETED
            else PurchaseConflict.ACTIVE_EXISTS
        )
        return cls(conflict=conflict, existing=existing)


class ConfirmationOutcome(str, Enum):
    """What a confirmation call observed."""

    COMPLETED = "completed"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


class ConfirmationResult(BaseModel):
    """Return value of a confirmation request."""

    purchase: Purchase
    outcome: ConfirmationOutcome
    replayed: bool = Field(
        default=False,
        description="True when the purchase was already final and nothing was written",
    )

    model_config = ConfigDict(frozen=True)


class PurchaseAuditEventType(str, Enum):
    """Audit event categories emitted by the purchase subsystem."""

    INITIATED = "purchase_initiated"
    GATEWAY_FAILED = "purchase_gateway_failed"
    PROCESSING = "purchase_processing"
    COMPLETED = "purchase_completed"
    PAYMENT_FAILED = "purchase_payment_failed"
    REFUNDED = "purchase_refunded"
    EXPIRED = "purchase_expired"


class PurchaseAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: PurchaseAuditEventType
    purchase_id: str
    user_id: str
    material_id: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "ConfirmationOutcome",
    "ConfirmationResult",
    "CreateResult",
    "Material",
    "Purchase",
    "PurchaseAuditEvent",
    "PurchaseAuditEventType",
    "PurchaseConflict",
    "PurchaseStatus",
    "TERMINAL_STATUSES",
    "UserRole",
    "validate_transition",
]
